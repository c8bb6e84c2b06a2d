from rcon.source import Client as RconClient


class RconProbe:
    """Queries a game server's admin console over Source RCON."""

    def query(self, *, host: str, port: int, password: str, command: str, timeout_ms: int) -> str:
        with RconClient(host, port, passwd=password, timeout=timeout_ms / 1000) as client:
            return client.run(command)
