from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from gsfleet.control.provisioner import Ec2Provisioner, build_environment
from gsfleet.errors import InsufficientCapacityError, UserError
from gsfleet.games.registry import get_variant


@pytest.fixture
def mock_deploy_deps(monkeypatch):
    """Mock every AWS and host dependency of Ec2Provisioner.deploy()."""
    defaults = {
        "get_default_vpc_and_subnet": ("vpc-123", "subnet-123"),
        "get_latest_al2023_ami": "ami-test123",
        "get_or_create_security_group": "sg-test123",
        "launch_instance": "i-test123",
        "wait_for_instance_running": None,
        "get_instance_public_ip": "54.1.2.3",
        "ensure_key_pair": Path("/tmp/gsfleet-key.pem"),
        "find_fleet_instances": [],
        "terminate_instance": None,
    }
    mocks = {}
    for name, rv in defaults.items():
        mock = MagicMock(return_value=rv)
        monkeypatch.setattr(f"gsfleet.control.provisioner.{name}", mock)
        mocks[name] = mock

    mock_ssh = MagicMock()
    mock_open_shell = MagicMock(return_value=mock_ssh)
    monkeypatch.setattr("gsfleet.control.provisioner.open_shell", mock_open_shell)
    mocks["open_shell"] = mock_open_shell

    mock_docker = MagicMock()
    mock_docker_cls = MagicMock(return_value=mock_docker)
    monkeypatch.setattr("gsfleet.control.provisioner.RemoteDocker", mock_docker_cls)
    mocks["RemoteDocker"] = mock_docker_cls

    return SimpleNamespace(ssh=mock_ssh, docker=mock_docker, mocks=mocks)


def deploy(provisioner, **overrides):
    kwargs = dict(
        instance_id="abcdef12-3456", region="us-east-1", variant="standard-competitive",
        owner_id="owner-1", owner_identity="[U:1:123]", overrides={},
    )
    kwargs.update(overrides)
    return provisioner.deploy(**kwargs)


def test_deploy_returns_connection_details(mock_deploy_deps, tmp_path):
    server = deploy(Ec2Provisioner(key_dir=tmp_path))

    assert server.host == "54.1.2.3"
    assert server.port == 27015
    assert server.tv_host == "54.1.2.3"
    assert server.tv_port == 27020
    assert len(server.rcon_password) > 10
    assert server.server_password
    assert server.extra["ec2_instance_id"] == "i-test123"
    mock_deploy_deps.mocks["open_shell"].assert_called_once_with("54.1.2.3", mock_deploy_deps.mocks["ensure_key_pair"].return_value)
    mock_deploy_deps.ssh.close.assert_called_once()
    mock_deploy_deps.docker.wait_for_docker.assert_called_once()
    mock_deploy_deps.docker.pull.assert_called_once_with("sonikro/tf2-standard-competitive")


def test_deploy_tags_and_sizes_instance(mock_deploy_deps, tmp_path):
    deploy(Ec2Provisioner(key_dir=tmp_path), variant="ultiduo", owner_id="owner-9")

    kwargs = mock_deploy_deps.mocks["launch_instance"].call_args.kwargs
    assert kwargs["instance_type"] == "t3.small"
    assert kwargs["instance_id"] == "abcdef12-3456"
    assert kwargs["owner_id"] == "owner-9"
    assert kwargs["variant"] == "ultiduo"
    assert kwargs["security_group_id"] == "sg-test123"
    assert kwargs["subnet_id"] == "subnet-123"


def test_deploy_starts_container_with_passwords(mock_deploy_deps, tmp_path):
    server = deploy(Ec2Provisioner(key_dir=tmp_path), overrides={"SV_PURE": "2"})

    kwargs = mock_deploy_deps.docker.run.call_args.kwargs
    assert kwargs["container_name"] == "gsfleet-abcdef12-3456"
    assert kwargs["env"]["RCON_PASSWORD"] == server.rcon_password
    assert kwargs["env"]["SERVER_PASSWORD"] == server.server_password
    assert kwargs["env"]["ADMIN_LIST"] == "[U:1:123]"
    assert kwargs["env"]["SV_PURE"] == "2"
    assert kwargs["command"] == ["-enablefakeip", "+maxplayers", "24", "+map", "cp_badlands"]


def test_deploy_reports_progress(mock_deploy_deps, tmp_path):
    steps = []
    deploy(Ec2Provisioner(key_dir=tmp_path, on_status=steps.append))
    assert steps[0] == "Finding default VPC"
    assert "Starting game server" in steps


def test_deploy_unknown_variant(mock_deploy_deps, tmp_path):
    with pytest.raises(UserError, match="Unknown variant"):
        deploy(Ec2Provisioner(key_dir=tmp_path), variant="nope")
    mock_deploy_deps.mocks["launch_instance"].assert_not_called()


def test_deploy_maps_capacity_error(mock_deploy_deps, make_client_error, tmp_path):
    mock_deploy_deps.mocks["launch_instance"].side_effect = make_client_error("InsufficientInstanceCapacity")

    with pytest.raises(InsufficientCapacityError) as excinfo:
        deploy(Ec2Provisioner(key_dir=tmp_path), region="eu-west-2")

    assert excinfo.value.region == "eu-west-2"
    assert excinfo.value.instance_type == "t3.medium"
    assert "capacity" in str(excinfo.value)


def test_deploy_other_client_errors_propagate(mock_deploy_deps, make_client_error, tmp_path):
    mock_deploy_deps.mocks["launch_instance"].side_effect = make_client_error("UnauthorizedOperation")
    with pytest.raises(ClientError):
        deploy(Ec2Provisioner(key_dir=tmp_path))


def test_deploy_failure_terminates_instance(mock_deploy_deps, tmp_path):
    mock_deploy_deps.docker.pull.side_effect = RuntimeError("manifest unknown")

    with pytest.raises(RuntimeError, match="manifest unknown"):
        deploy(Ec2Provisioner(key_dir=tmp_path))

    mock_deploy_deps.mocks["terminate_instance"].assert_called_once_with("us-east-1", "i-test123")
    mock_deploy_deps.ssh.close.assert_called_once()


def test_deploy_without_public_ip_terminates(mock_deploy_deps, tmp_path):
    mock_deploy_deps.mocks["get_instance_public_ip"].return_value = None

    with pytest.raises(RuntimeError, match="no public IP"):
        deploy(Ec2Provisioner(key_dir=tmp_path))
    mock_deploy_deps.mocks["terminate_instance"].assert_called_once()
    mock_deploy_deps.mocks["open_shell"].assert_not_called()


def test_destroy_terminates_tagged_instances(mock_deploy_deps, tmp_path):
    mock_deploy_deps.mocks["find_fleet_instances"].return_value = [
        {"ec2_instance_id": "i-aaa"}, {"ec2_instance_id": "i-bbb"},
    ]
    Ec2Provisioner(key_dir=tmp_path).destroy(instance_id="srv-1", region="us-west-2")

    mock_deploy_deps.mocks["find_fleet_instances"].assert_called_once_with("us-west-2", "srv-1")
    terminated = [c.args[1] for c in mock_deploy_deps.mocks["terminate_instance"].call_args_list]
    assert terminated == ["i-aaa", "i-bbb"]


def test_destroy_missing_is_noop(mock_deploy_deps, tmp_path):
    Ec2Provisioner(key_dir=tmp_path).destroy(instance_id="gone", region="us-east-1")
    mock_deploy_deps.mocks["terminate_instance"].assert_not_called()


def test_destroy_ignores_already_terminated(mock_deploy_deps, make_client_error, tmp_path):
    mock_deploy_deps.mocks["find_fleet_instances"].return_value = [{"ec2_instance_id": "i-aaa"}]
    mock_deploy_deps.mocks["terminate_instance"].side_effect = make_client_error("InvalidInstanceID.NotFound")
    Ec2Provisioner(key_dir=tmp_path).destroy(instance_id="srv-1", region="us-east-1")


def test_build_environment_precedence():
    variant = get_variant("standard-competitive")
    env = build_environment(
        "abcdef1234", variant, "[U:1:1]", "rcon", "pw", "tv",
        overrides={"SERVER_HOSTNAME": "Custom", "EXTRA": "1"},
    )
    assert env["SERVER_HOSTNAME"] == "Custom"
    assert env["EXTRA"] == "1"
    assert env["STV_PASSWORD"] == "tv"
    assert env["STV_NAME"] == "Standard Competitive TV"


def test_build_environment_hostname():
    env = build_environment("abcdef1234", get_variant("casual"), "[U:1:1]", "r", "p", "t")
    assert env["SERVER_HOSTNAME"] == "#abcdef12 Casual 24 players"
