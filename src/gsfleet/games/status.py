"""Parse the output of the Source engine ``status`` RCON command.

A transcript looks like::

    hostname: TF2-QuickServer | Virginia
    udp/ip  : 169.254.173.35:13768  (local: 0.0.0.0:27015)
    map     : cp_badlands at: 0 x, 0 y, 0 z
    sourcetv:  169.254.173.35:13768, delay 30.0s  (local: 0.0.0.0:27020)
    players : 1 humans, 1 bots (25 max)
    # userid name                uniqueid            connected ping loss state  adr
    #      2 "TF2-QuickServer TV | Virginia @" BOT                       active
    #      3 "sonikro"           [U:1:29162964]      00:20       60    0 active 169.254.249.16:18930

``player_count`` is the number of rows listed under the ``# userid`` header,
which includes bot rows such as the SourceTV relay.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_ADDRESS_RE = re.compile(r"^udp/ip\s*:\s*([\d.]+):(\d+)", re.MULTILINE)
_TV_RE = re.compile(r"^sourcetv:\s*([\d.]+):(\d+)", re.MULTILINE)
_HOSTNAME_RE = re.compile(r"^hostname\s*:\s*(.*?)\s*$", re.MULTILINE)
_MAP_RE = re.compile(r"^map\s*:\s*(\S+)", re.MULTILINE)
_PLAYERS_RE = re.compile(
    r"^players\s*:\s*(\d+)\s+humans?(?:,\s*(\d+)\s+bots?)?(?:\s*\((\d+)\s+max\))?",
    re.MULTILINE,
)
_TABLE_HEADER = "# userid"


@dataclass(frozen=True)
class ProbeStatus:
    server_ip: str | None = None
    server_port: int | None = None
    tv_ip: str | None = None
    tv_port: int | None = None
    player_count: int = 0
    hostname: str | None = None
    map: str | None = None
    humans: int | None = None
    bots: int | None = None
    max_players: int | None = None

    @property
    def is_empty(self) -> bool:
        return self.player_count == 0


def _count_player_rows(transcript: str) -> int:
    in_table = False
    count = 0
    for line in transcript.splitlines():
        stripped = line.strip()
        if not in_table:
            if stripped.startswith(_TABLE_HEADER):
                in_table = True
            continue
        if not stripped.startswith("#"):
            break
        # Source prints "#end" after the table on some builds
        if stripped.startswith("#end"):
            break
        count += 1
    return count


def parse_status(transcript: str) -> ProbeStatus:
    """Decode a ``status`` transcript. Fields that are not present stay ``None``."""
    fields: dict = {}

    m = _ADDRESS_RE.search(transcript)
    if m:
        fields["server_ip"] = m.group(1)
        fields["server_port"] = int(m.group(2))

    m = _TV_RE.search(transcript)
    if m:
        fields["tv_ip"] = m.group(1)
        fields["tv_port"] = int(m.group(2))

    m = _HOSTNAME_RE.search(transcript)
    if m and m.group(1):
        fields["hostname"] = m.group(1)

    m = _MAP_RE.search(transcript)
    if m:
        fields["map"] = m.group(1)

    m = _PLAYERS_RE.search(transcript)
    if m:
        fields["humans"] = int(m.group(1))
        if m.group(2) is not None:
            fields["bots"] = int(m.group(2))
        if m.group(3) is not None:
            fields["max_players"] = int(m.group(3))

    fields["player_count"] = _count_player_rows(transcript)
    return ProbeStatus(**fields)
