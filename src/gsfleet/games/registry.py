from dataclasses import dataclass, field


@dataclass(frozen=True)
class GamePort:
    port: int
    protocol: str  # "tcp" or "udp"

    def docker_publish(self) -> str:
        return f"{self.port}:{self.port}/{self.protocol}"

    def sg_rule(self) -> dict:
        return {
            "IpProtocol": self.protocol,
            "FromPort": self.port,
            "ToPort": self.port,
            "IpRanges": [{"CidrIp": "0.0.0.0/0", "Description": f"Game port {self.port}"}],
        }


@dataclass(frozen=True)
class VariantDefinition:
    name: str
    display_name: str
    image: str
    ports: list[GamePort]
    default_instance_type: str
    max_players: int = 24
    default_map: str = "cp_badlands"
    game_port: int = 27015
    tv_port: int | None = 27020
    # Minutes an instance may sit empty before it is reclaimed; None uses the fleet default.
    idle_minutes: int | None = None
    environment: dict[str, str] = field(default_factory=dict)
    guild_id: str | None = None
    disk_gb: int = 30


_registry: dict[str, VariantDefinition] = {}


def register_variant(variant: VariantDefinition) -> None:
    _registry[variant.name] = variant


def get_variant(name: str) -> VariantDefinition | None:
    return _registry.get(name)


def list_variants(guild_id: str | None = None) -> list[VariantDefinition]:
    return [
        v for v in _registry.values()
        if v.guild_id is None or v.guild_id == guild_id
    ]


def idle_minutes_for(name: str, default: int) -> int:
    variant = get_variant(name)
    if variant and variant.idle_minutes is not None:
        return variant.idle_minutes
    return default
