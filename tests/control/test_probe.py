from unittest.mock import patch

from gsfleet.control.probe import RconProbe

from conftest import EMPTY_STATUS


@patch("gsfleet.control.probe.RconClient")
def test_query_runs_command_over_rcon(mock_client_cls):
    client = mock_client_cls.return_value.__enter__.return_value
    client.run.return_value = EMPTY_STATUS

    output = RconProbe().query(host="1.2.3.4", port=27015, password="pw", command="status", timeout_ms=5000)

    assert output == EMPTY_STATUS
    mock_client_cls.assert_called_once_with("1.2.3.4", 27015, passwd="pw", timeout=5.0)
    client.run.assert_called_once_with("status")
