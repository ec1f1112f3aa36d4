"""Traffic counters from the Xray stats API.

``xray api statsquery`` prints its reply as brace-delimited records, one
field per line in the usual case::

    {
        "name": "inbound>>>my-tag>>>traffic>>>uplink",
        "value": 4832
    },
    {
        "name": "outbound>>>blocked>>>traffic>>>downlink"
    }

A counter that saw no traffic has no ``value`` and is dropped. The query is
issued with ``reset=true``, so every snapshot holds the traffic since the
previous one.
"""

import asyncio
import enum
import logging
import re
from typing import Dict, Iterable, List, Optional

from xui_engine.settings import Settings

logger = logging.getLogger(__name__)

# first quoted string after the key, whatever the separator
_RE_NAME = re.compile(r'\bname"?[^"\w]*"([^"]*)"')
# first run of digits after the key; quoted int64 values included
_RE_VALUE = re.compile(r'\bvalue\W*(\d+)')

CLOSE_TOKENS = ("}", "},", ">")


class ParserState(enum.Enum):
    AWAITING_RECORD = "awaiting_record"
    HAVE_NAME = "have_name"
    HAVE_VALUE = "have_value"
    HAVE_NAME_AND_VALUE = "have_name_and_value"


class StatsParser:
    """Line-by-line state machine over a statsquery reply.

    A record is committed when it closes while both a name and a value have
    been seen, or straight away when one line carries both (compact form).
    Closing a record always clears it, committed or not.
    """

    def __init__(self) -> None:
        self.result: Dict[str, int] = {}
        self.state: ParserState = ParserState.AWAITING_RECORD
        self._name: Optional[str] = None
        self._value: Optional[int] = None

    def feed(self, line: str) -> None:
        stripped = line.strip()
        if stripped in CLOSE_TOKENS:
            self._close_record()
            return

        name_match = _RE_NAME.search(stripped)
        rest = stripped
        if name_match:
            # a tag such as "value-5" must not be read as a value
            rest = f"{stripped[:name_match.start()]} {stripped[name_match.end():]}"
        value_match = _RE_VALUE.search(rest)
        if name_match:
            self._name = name_match.group(1)
        if value_match:
            self._value = int(value_match.group(1))
        self._update_state()

        if name_match and value_match:
            self._close_record()
        elif stripped.endswith(CLOSE_TOKENS) and (name_match or value_match):
            # "{ "name": "x" }" style record with everything on one line
            self._close_record()

    def feed_lines(self, lines: Iterable[str]) -> Dict[str, int]:
        for line in lines:
            self.feed(line)
        return self.result

    def _update_state(self) -> None:
        if self._name is not None and self._value is not None:
            self.state = ParserState.HAVE_NAME_AND_VALUE
        elif self._name is not None:
            self.state = ParserState.HAVE_NAME
        elif self._value is not None:
            self.state = ParserState.HAVE_VALUE
        else:
            self.state = ParserState.AWAITING_RECORD

    def _close_record(self) -> None:
        if self.state is ParserState.HAVE_NAME_AND_VALUE:
            self.result[self._name] = self._value
        self._name = None
        self._value = None
        self.state = ParserState.AWAITING_RECORD


def parse_stats(text: str) -> Dict[str, int]:
    """Parse a statsquery reply into a counter name -> value mapping."""
    return StatsParser().feed_lines(text.splitlines())


class StatsCollector:
    """Runs the stats query against the core's loopback API listener."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def command(self) -> List[str]:
        return [
            str(self.settings.xray_bin_path),
            "api",
            "statsquery",
            f"--server=127.0.0.1:{self.settings.api_port}",
            "pattern=",
            "reset=true",
        ]

    async def query(self) -> Dict[str, int]:
        """Read and reset every counter.

        Returns:
            The parsed counters, or an empty dict when the query could not be
            run or exited non-zero.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except OSError as e:
            logger.error("Xray API call failed: %s", e)
            return {}

        if proc.returncode != 0:
            logger.error("Xray API error (exit %s): %s", proc.returncode,
                         stderr.decode("utf-8", errors="replace").strip())
            return {}

        return parse_stats(stdout.decode("utf-8", errors="replace"))
