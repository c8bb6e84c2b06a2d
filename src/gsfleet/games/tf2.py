from gsfleet.games.registry import GamePort, VariantDefinition, register_variant

TF2_PORTS = [
    GamePort(port=27015, protocol="udp"),
    GamePort(port=27015, protocol="tcp"),
    GamePort(port=27020, protocol="udp"),
]
TF2_IMAGE = "sonikro/tf2-standard-competitive"

standard_competitive = VariantDefinition(
    name="standard-competitive",
    display_name="Standard Competitive",
    image=TF2_IMAGE,
    ports=TF2_PORTS,
    default_instance_type="t3.medium",
    max_players=24,
    default_map="cp_badlands",
)

casual = VariantDefinition(
    name="casual",
    display_name="Casual 24 players",
    image=TF2_IMAGE,
    ports=TF2_PORTS,
    default_instance_type="t3.medium",
    max_players=24,
    default_map="ctf_2fort",
    idle_minutes=15,
)

ultiduo = VariantDefinition(
    name="ultiduo",
    display_name="Ultiduo",
    image=TF2_IMAGE,
    ports=TF2_PORTS,
    default_instance_type="t3.small",
    max_players=4,
    default_map="ulti_nuclear_b5",
    idle_minutes=5,
)

register_variant(standard_competitive)
register_variant(casual)
register_variant(ultiduo)
