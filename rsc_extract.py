"""
Listing extraction from the e-housing.jp RSC flight payload.

e-housing.jp is a Next.js App Router site. Search results are not in the
DOM; they arrive inside ``self.__next_f.push([...])`` script calls as a
JSON document that has itself been string-escaped (every quote is ``\\"``).
This module is the only place that knows those markers. Callers depend on
the ListingExtractor protocol and get a ParsedPage back.

Strategy:
  1. Concatenate every <script> body containing the flight marker.
  2. Find the ``\\"properties\\":`` marker. ``[]`` right after it is an
     explicit empty result.
  3. Bracket-balance the array (string/escape aware), unescape one level,
     json.loads.
  4. If that fails, retry inside a bounded window that is unescaped first
     and balanced second. If that also fails, log and return [].
  5. ``\\"propertiesMeta\\":`` is brace-balanced the same way; any failure
     there yields None.
"""

import json
import logging
import re
from typing import List, Optional, Protocol

from bs4 import BeautifulSoup

from errors import MalformedInput
from listing_types import Listing, ListingsMeta, ParsedPage

logger = logging.getLogger(__name__)

FLIGHT_MARKER = "self.__next_f"
PROPERTIES_MARKER = '\\"properties\\":'
META_MARKER = '\\"propertiesMeta\\":'

# Upper bound on the slice the fallback parser re-examines (characters).
FALLBACK_WINDOW = 500_000

_CLOSERS = {"[": "]", "{": "}"}
_ESCAPE_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|.)", re.DOTALL)
_SIMPLE_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "b": "\b",
    "f": "\f",
}


def _unescape_one(match) -> str:
    seq = match.group(1)
    if seq[0] == "u" and len(seq) == 5:
        return chr(int(seq[1:], 16))
    return _SIMPLE_ESCAPES.get(seq, seq)


def extract_balanced(text: str, start: int) -> str:
    """Return text[start:end+1] where end closes the bracket opened at start.

    The opening character decides the pair ('[' / ']' or '{' / '}'). Depth
    only moves outside string literals. A double quote toggles the
    in-string flag unless escaped; a backslash always consumes the next
    character without touching any state.

    Raises MalformedInput if start is not an opening bracket or the text
    ends before depth returns to zero.
    """
    if start < 0 or start >= len(text) or text[start] not in _CLOSERS:
        raise MalformedInput(f"no opening bracket at offset {start}")

    opener = text[start]
    closer = _CLOSERS[opener]
    depth = 0
    in_string = False
    escaped = False

    for i in range(start, len(text)):
        char = text[i]
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]

    raise MalformedInput(
        f"unbalanced {opener!r} starting at offset {start} "
        f"({len(text) - start} chars scanned)"
    )


def unescape_payload(raw: str) -> str:
    """Remove one level of string escaping from an RSC fragment.

    Every escape sequence is decoded in a single pass, so ``\\\\\\"`` (a
    quote escaped inside a string value) comes out as ``\\"`` and
    ``\\\\n`` as ``\\n``. A lone trailing backslash, as at the edge of a
    truncated window, is left alone.
    """
    return _ESCAPE_RE.sub(_unescape_one, raw)


class ListingExtractor(Protocol):
    def extract(self, html: str) -> ParsedPage:
        ...


class RscPayloadExtractor:
    """Pulls listings and pagination metadata out of an RSC search page."""

    def __init__(self, fallback_window: int = FALLBACK_WINDOW):
        self.fallback_window = fallback_window

    def extract(self, html: str) -> ParsedPage:
        payload = self.flight_payload(html)
        return ParsedPage(
            listings=self.parse_listings(payload),
            meta=self.parse_meta(payload),
        )

    @staticmethod
    def flight_payload(html: str) -> str:
        """Concatenate every script body that carries flight data."""
        soup = BeautifulSoup(html, "html.parser")
        chunks = []
        for script in soup.find_all("script"):
            text = script.string if script.string is not None else script.get_text()
            if text and FLIGHT_MARKER in text:
                chunks.append(text)
        if not chunks:
            raise MalformedInput("No RSC flight data found in HTML")
        return "".join(chunks)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def parse_listings(self, payload: str) -> List[Listing]:
        marker_idx = payload.find(PROPERTIES_MARKER)
        if marker_idx == -1:
            raise MalformedInput("Could not find properties array in RSC payload")

        after = payload[marker_idx + len(PROPERTIES_MARKER):].lstrip()
        if after.startswith("[]"):
            return []

        array_start = payload.find("[", marker_idx + len(PROPERTIES_MARKER))
        if array_start == -1:
            raise MalformedInput("Could not find properties array start")

        try:
            raw = extract_balanced(payload, array_start)
            items = json.loads(unescape_payload(raw))
        except (MalformedInput, ValueError) as e:
            logger.warning(
                "[rsc] Strict properties parse failed (%s); trying fallback window", e
            )
            items = self._fallback_items(payload, marker_idx)
            if items is None:
                return []

        return self._to_listings(items)

    def _fallback_items(self, payload: str, marker_idx: int) -> Optional[list]:
        window = payload[marker_idx:marker_idx + self.fallback_window]
        truncated = marker_idx + self.fallback_window < len(payload)
        unescaped = unescape_payload(window)
        array_start = unescaped.find("[")
        if array_start == -1:
            logger.error("[rsc] Fallback parse found no array in window")
            return None
        try:
            return json.loads(extract_balanced(unescaped, array_start))
        except MalformedInput:
            if truncated:
                logger.error(
                    "[rsc] Properties payload exceeds fallback window of %d chars; "
                    "returning no listings",
                    self.fallback_window,
                )
            else:
                logger.error("[rsc] Fallback parse could not balance properties array")
            return None
        except ValueError as e:
            logger.error("[rsc] Fallback property parsing also failed: %s", e)
            return None

    @staticmethod
    def _to_listings(items) -> List[Listing]:
        if not isinstance(items, list):
            logger.error("[rsc] properties payload is %s, not a list", type(items).__name__)
            return []
        listings = []
        for item in items:
            if not isinstance(item, dict):
                logger.warning("[rsc] Skipping non-object property entry")
                continue
            try:
                listings.append(Listing.from_dict(item))
            except (ValueError, TypeError) as e:
                logger.warning("[rsc] Skipping malformed property entry: %s", e)
        return listings

    # ------------------------------------------------------------------
    # Pagination metadata
    # ------------------------------------------------------------------

    @staticmethod
    def parse_meta(payload: str) -> Optional[ListingsMeta]:
        marker_idx = payload.find(META_MARKER)
        if marker_idx == -1:
            return None
        obj_start = payload.find("{", marker_idx + len(META_MARKER))
        if obj_start == -1:
            return None
        try:
            data = json.loads(unescape_payload(extract_balanced(payload, obj_start)))
        except (MalformedInput, ValueError):
            logger.info("[rsc] propertiesMeta present but unparseable")
            return None
        if not isinstance(data, dict):
            return None
        return ListingsMeta.from_dict(data)
