"""Object naming: name generation from uploaded filenames and path-segment resolution.

A generated name looks like ``1630319889123-My_File.mp4``: the upload time in
milliseconds, a hyphen, the sanitized base name and the lowercased extension.
The same grammar decides which root path segments the proxy route treats as
object references.

Uniqueness is only probabilistic. Two uploads of the same filename within one
millisecond produce the same name; the store refuses the second ``put`` and
the upload service regenerates the name once (see ``UploadService``).
"""
import enum
import re
import time
from typing import NamedTuple, Optional
from urllib.parse import quote

NAME_PATTERN = re.compile(r"\d{9,}[-A-Za-z0-9_.]*\.[A-Za-z0-9]+", re.ASCII)

# Root segments owned by other routes, never looked up in the store
RESERVED_SEGMENTS = frozenset({"api", "files", "favicon.ico", "css", "js", "public"})

MAX_NAME_LENGTH = 255
FALLBACK_EXTENSION = "bin"

_ILLEGAL_CHARS = re.compile(r'[/?<>\\:*|"]')
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x80-\x9f]")
_DOTS_ONLY = re.compile(r"^\.+$")
_DEVICE_NAME = re.compile(r"^(con|prn|aux|nul|com[0-9]|lpt[0-9])(\..*)?$", re.IGNORECASE)
_TRAILING = re.compile(r"[. ]+$")
_WHITESPACE = re.compile(r"\s+")
_NOT_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")
_NOT_EXT_CHARS = re.compile(r"[^a-z0-9]")


class SegmentKind(enum.Enum):
    RESERVED = "reserved"
    OBJECT = "object"
    UNMATCHED = "unmatched"


class SegmentMatch(NamedTuple):
    kind: SegmentKind
    name: Optional[str] = None


def now_ms() -> int:
    return int(time.time() * 1000)


def split_extension(filename: str):
    """Split ``filename`` into (base, lowercased extension without the dot).

    A leading dot does not start an extension, so ``.bashrc`` has none.
    """
    dot = filename.rfind(".")
    if dot <= 0:
        return filename, ""
    return filename[:dot], filename[dot + 1:].lower()


def sanitize_base(base: str) -> str:
    """Strip characters unsafe in a filename or URL and collapse whitespace to ``_``."""
    cleaned = _ILLEGAL_CHARS.sub("", base)
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    if _DOTS_ONLY.match(cleaned) or _DEVICE_NAME.match(cleaned):
        cleaned = ""
    cleaned = _TRAILING.sub("", cleaned)
    cleaned = _WHITESPACE.sub("_", cleaned)
    return _NOT_NAME_CHARS.sub("", cleaned)


def generate_name(original_filename: str, timestamp_ms: Optional[int] = None) -> str:
    """Derive a URL-safe object name for an uploaded file.

    Args:
        original_filename: Filename as sent by the client, possibly with a path.
        timestamp_ms: Prefix to use instead of the current time.

    Returns:
        A name matching ``NAME_PATTERN``.
    """
    filename = re.split(r"[/\\]", original_filename or "")[-1] or "file"
    base, extension = split_extension(filename)

    extension = _NOT_EXT_CHARS.sub("", extension) or FALLBACK_EXTENSION
    prefix = f"{timestamp_ms if timestamp_ms is not None else now_ms()}-"

    room = MAX_NAME_LENGTH - len(prefix) - len(extension) - 1
    base = sanitize_base(base)[:max(room, 0)]

    return f"{prefix}{base}.{extension}"


def timestamp_of(name: str) -> int:
    """Return the millisecond prefix of a generated name."""
    return int(name.split("-", 1)[0])


def is_object_name(segment: str) -> bool:
    return bool(NAME_PATTERN.fullmatch(segment))


def resolve_segment(segment: str) -> SegmentMatch:
    """Classify a root path segment for the proxy route.

    Reserved segments are tested before the grammar, so names like ``files``
    never turn into store lookups.
    """
    if segment in RESERVED_SEGMENTS:
        return SegmentMatch(SegmentKind.RESERVED)
    if is_object_name(segment):
        return SegmentMatch(SegmentKind.OBJECT, segment)
    return SegmentMatch(SegmentKind.UNMATCHED)


def object_url(base_url: str, name: str) -> str:
    """Public gateway address of ``name``, e.g. ``https://host/1630319889123-a.txt``."""
    return f"{base_url.rstrip('/')}/{quote(name, safe='')}"
