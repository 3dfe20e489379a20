"""Parser for the Prometheus text and OpenMetrics exposition formats."""
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import logging
import math
import re

from perftest.errors import ParseError
from perftest.series import METRIC_NAME, Labels, Sample

logger = logging.getLogger(__name__)

TEXT_CONTENT_TYPE = "text/plain"
OPENMETRICS_CONTENT_TYPE = "application/openmetrics-text"
PROTOBUF_CONTENT_TYPE = "application/vnd.google.protobuf"

METRIC_TYPES = {
    "counter", "gauge", "histogram", "summary", "untyped",
    "unknown", "info", "stateset", "gaugehistogram",
}

_METRIC_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_FLOAT_RE = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_INT_RE = re.compile(r"-?\d+")

_ESCAPES = {"\\": "\\", '"': '"', "n": "\n"}


@dataclass
class MetricMetadata:
    """TYPE/HELP/UNIT information recorded for a metric family."""
    type: Optional[str] = None
    help: Optional[str] = None
    unit: Optional[str] = None


def parse_value(token: str) -> float:
    """Parse a sample value, accepting the Inf/NaN spellings."""
    lowered = token.lower()
    if lowered in ("+inf", "inf"):
        return math.inf
    if lowered == "-inf":
        return -math.inf
    if lowered == "nan":
        return math.nan
    if not _FLOAT_RE.fullmatch(token):
        raise ValueError(f"invalid value {token!r}")
    return float(token)


class ExpositionParser:
    """Decodes one scrape payload into samples.

    The parser is all-or-nothing: the first malformed line raises
    ``ParseError`` and no samples are returned. Metadata lines are recorded
    in ``metadata`` keyed by metric family name.
    """

    def __init__(self, content_type: str = ""):
        media_type = content_type.split(";")[0].strip().lower()
        if media_type == PROTOBUF_CONTENT_TYPE:
            raise ParseError(f"Unsupported content type: {content_type}")
        self.content_type = content_type
        self.openmetrics = media_type == OPENMETRICS_CONTENT_TYPE
        self.metadata: Dict[str, MetricMetadata] = {}

    def parse(self, payload: bytes, default_timestamp_ms: int) -> List[Sample]:
        """Parse ``payload``; samples without a timestamp get ``default_timestamp_ms``."""
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"Payload is not valid UTF-8: {e}")

        samples: List[Sample] = []
        seen_eof = False

        for line_no, raw_line in enumerate(text.split("\n"), start=1):
            line = raw_line.strip()
            if seen_eof:
                if line:
                    raise ParseError("Unexpected data after # EOF", line_no, raw_line)
                continue
            if not line:
                continue
            if line.startswith("#"):
                if line == "# EOF":
                    seen_eof = True
                else:
                    self._parse_comment(line, line_no)
                continue
            samples.append(self._parse_sample(line, line_no, default_timestamp_ms))

        logger.debug(f"Parsed {len(samples)} samples ({len(self.metadata)} metric families)")
        return samples

    def _parse_comment(self, line: str, line_no: int):
        parts = line[1:].strip().split(None, 2)
        if not parts or parts[0] not in ("TYPE", "HELP", "UNIT"):
            return

        keyword = parts[0]
        if len(parts) < 2 or not _METRIC_NAME_RE.fullmatch(parts[1]):
            raise ParseError(f"Malformed # {keyword} line", line_no, line)

        meta = self.metadata.setdefault(parts[1], MetricMetadata())
        text = parts[2] if len(parts) > 2 else ""
        if keyword == "TYPE":
            if text.lower() not in METRIC_TYPES:
                raise ParseError(f"Invalid metric type {text!r}", line_no, line)
            meta.type = text.lower()
        elif keyword == "HELP":
            meta.help = text.replace("\\n", "\n").replace("\\\\", "\\")
        else:
            meta.unit = text

    def _parse_sample(self, line: str, line_no: int, default_timestamp_ms: int) -> Sample:
        pairs: List[Tuple[str, str]] = []
        pos = 0

        match = _METRIC_NAME_RE.match(line)
        if match:
            pairs.append((METRIC_NAME, match.group(0)))
            pos = match.end()

        if pos < len(line) and line[pos] == "{":
            pos = self._parse_labels(line, pos + 1, pairs, line_no)
        elif not match:
            raise ParseError("Expected metric name", line_no, line)

        if pos >= len(line) or line[pos] not in " \t":
            raise ParseError("Expected value after metric", line_no, line)

        rest = line[pos:]
        if self.openmetrics and " # " in rest:
            # exemplar
            rest = rest.split(" # ", 1)[0]

        fields = rest.split()
        if len(fields) not in (1, 2):
            raise ParseError("Expected value and optional timestamp", line_no, line)

        try:
            value = parse_value(fields[0])
        except ValueError as e:
            raise ParseError(str(e), line_no, line)

        timestamp_ms = default_timestamp_ms
        if len(fields) == 2:
            timestamp_ms = self._parse_timestamp(fields[1], line, line_no)

        try:
            labels = Labels.from_pairs(pairs)
        except ValueError as e:
            raise ParseError(str(e), line_no, line)

        if not labels.has(METRIC_NAME):
            raise ParseError(f"Missing metric name ({METRIC_NAME} label)", line_no, line)

        return Sample(labels, timestamp_ms, value)

    def _parse_labels(self, line: str, pos: int, pairs: List[Tuple[str, str]], line_no: int) -> int:
        """Parse ``name="value",...}`` starting after the brace; returns the position past ``}``."""
        while True:
            pos = _skip_blanks(line, pos)
            if pos < len(line) and line[pos] == "}":
                return pos + 1

            match = _LABEL_NAME_RE.match(line, pos)
            if not match:
                raise ParseError("Expected label name", line_no, line)
            name = match.group(0)
            pos = _skip_blanks(line, match.end())

            if pos >= len(line) or line[pos] != "=":
                raise ParseError(f"Expected '=' after label name {name!r}", line_no, line)
            pos = _skip_blanks(line, pos + 1)

            if pos >= len(line) or line[pos] != '"':
                raise ParseError(f"Expected quoted value for label {name!r}", line_no, line)
            value, pos = _read_quoted(line, pos + 1, line_no)
            pairs.append((name, value))

            pos = _skip_blanks(line, pos)
            if pos < len(line) and line[pos] == ",":
                pos += 1
            elif pos < len(line) and line[pos] == "}":
                return pos + 1
            else:
                raise ParseError("Expected ',' or '}' in label list", line_no, line)

    def _parse_timestamp(self, token: str, line: str, line_no: int) -> int:
        if self.openmetrics:
            try:
                seconds = parse_value(token)
            except ValueError:
                raise ParseError(f"Invalid timestamp {token!r}", line_no, line)
            if math.isnan(seconds) or math.isinf(seconds):
                raise ParseError(f"Invalid timestamp {token!r}", line_no, line)
            return int(round(seconds * 1000))

        if not _INT_RE.fullmatch(token):
            raise ParseError(f"Invalid timestamp {token!r}", line_no, line)
        return int(token)


def _skip_blanks(line: str, pos: int) -> int:
    while pos < len(line) and line[pos] in " \t":
        pos += 1
    return pos


def _read_quoted(line: str, pos: int, line_no: int) -> Tuple[str, int]:
    chars: List[str] = []
    while pos < len(line):
        ch = line[pos]
        if ch == '"':
            return "".join(chars), pos + 1
        if ch == "\\" and pos + 1 < len(line):
            nxt = line[pos + 1]
            chars.append(_ESCAPES.get(nxt, "\\" + nxt))
            pos += 2
            continue
        chars.append(ch)
        pos += 1
    raise ParseError("Unterminated label value", line_no, line)


def parse(payload: bytes, content_type: str, default_timestamp_ms: int) -> List[Sample]:
    """Parse a scrape payload into samples."""
    return ExpositionParser(content_type).parse(payload, default_timestamp_ms)
