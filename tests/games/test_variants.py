from gsfleet.games.registry import (
    GamePort,
    VariantDefinition,
    get_variant,
    idle_minutes_for,
    list_variants,
    register_variant,
)


def test_tf2_variants_registered():
    names = {v.name for v in list_variants()}
    assert {"standard-competitive", "casual", "ultiduo"} <= names


def test_idle_minutes_uses_variant_override():
    assert idle_minutes_for("ultiduo", 10) == 5
    assert idle_minutes_for("casual", 10) == 15


def test_idle_minutes_falls_back_to_default():
    assert idle_minutes_for("standard-competitive", 10) == 10
    assert idle_minutes_for("does-not-exist", 7) == 7


def test_guild_private_variant_only_listed_for_that_guild():
    register_variant(VariantDefinition(
        name="guild-scrim", display_name="Guild Scrim", image="acme/tf2",
        ports=[GamePort(port=27015, protocol="udp")], default_instance_type="t3.small",
        guild_id="guild-42",
    ))
    assert "guild-scrim" not in {v.name for v in list_variants()}
    assert "guild-scrim" in {v.name for v in list_variants("guild-42")}
    assert get_variant("guild-scrim").guild_id == "guild-42"


def test_game_port_rules():
    port = GamePort(port=27015, protocol="udp")
    assert port.docker_publish() == "27015:27015/udp"
    rule = port.sg_rule()
    assert rule["IpProtocol"] == "udp"
    assert rule["FromPort"] == rule["ToPort"] == 27015
