"""Session description helpers steering negotiation toward a preferred video codec."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from aiortc import sdp as aiortc_sdp

logger = logging.getLogger(__name__)

DEFAULT_CODEC_MATCHERS: tuple[str, ...] = ("av01", "av1")
"""Substrings identifying AV1 in MIME types and ``rtpmap`` encoding names."""

AV1_DEPENDENCY_DESCRIPTOR_EXTMAP = (
    "a=extmap:12 "
    "https://aomediacodec.github.io/av1-rtp-spec/#dependency-descriptor-rtp-header-extension"
)

_VIDEO_MEDIA_PREFIX = "m=video"
_RTPMAP_PATTERN = re.compile(r"^a=rtpmap:(\d+)\s+([^/\s]+)")


@dataclass(frozen=True, slots=True)
class CodecDescriptor:
    """A codec reported by the local media engine."""

    mime_type: str
    clock_rate: int
    payload_type: str | None = None
    fmtp: str | None = None

    @property
    def name(self) -> str:
        return self.mime_type.split("/", 1)[-1]

    def describe(self) -> str:
        if self.fmtp:
            return f"{self.mime_type} ({self.fmtp})"
        return self.mime_type

    def to_dict(self) -> dict[str, object]:
        return {
            "mime_type": self.mime_type,
            "clock_rate": self.clock_rate,
            "payload_type": self.payload_type,
            "fmtp": self.fmtp,
        }


@dataclass(frozen=True, slots=True)
class CodecSupport:
    """Summary of whether the preferred codec is available locally."""

    supported: bool
    matched: str | None
    available: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "supported": self.supported,
            "matched": self.matched,
            "available": list(self.available),
        }


def normalise_matchers(matchers: Iterable[str] | None) -> tuple[str, ...]:
    """Return lower-cased, de-duplicated matchers preserving their order."""

    if matchers is None:
        return DEFAULT_CODEC_MATCHERS
    cleaned: list[str] = []
    for matcher in matchers:
        if not isinstance(matcher, str):
            continue
        value = matcher.strip().lower()
        if value and value not in cleaned:
            cleaned.append(value)
    return tuple(cleaned)


def matches_codec(name: str, matchers: Sequence[str]) -> bool:
    """Return ``True`` when *name* contains any of *matchers* (case-insensitive)."""

    lowered = name.lower()
    return any(matcher in lowered for matcher in matchers)


def find_preferred_codec(
    codecs: Iterable[CodecDescriptor], matchers: Sequence[str]
) -> CodecDescriptor | None:
    for codec in codecs:
        if matches_codec(codec.mime_type, matchers):
            return codec
    return None


def codec_support(
    codecs: Sequence[CodecDescriptor], matchers: Iterable[str] | None = None
) -> CodecSupport:
    """Report whether any locally supported codec matches the preferred codec."""

    wanted = normalise_matchers(matchers)
    match = find_preferred_codec(codecs, wanted)
    available = tuple(codec.mime_type for codec in codecs)
    if match is None:
        logger.info(
            "Preferred video codec unavailable; engine offers: %s",
            ", ".join(available) or "none",
        )
    return CodecSupport(
        supported=match is not None,
        matched=match.mime_type if match is not None else None,
        available=available,
    )


def _line_separator(sdp: str) -> str:
    return "\r\n" if "\r\n" in sdp else "\n"


def _rewrite(
    sdp: str,
    matchers: Sequence[str],
    extension_line: str | None,
) -> str:
    separator = _line_separator(sdp)
    lines = sdp.split(separator)

    media_index = next(
        (index for index, line in enumerate(lines) if line.startswith(_VIDEO_MEDIA_PREFIX)),
        None,
    )
    if media_index is None:
        return sdp

    payload_type: str | None = None
    for line in lines[media_index + 1:]:
        if line.startswith("m="):
            break
        match = _RTPMAP_PATTERN.match(line)
        if match is not None and matches_codec(match.group(2), matchers):
            payload_type = match.group(1)
            logger.debug("Preferred codec rtpmap: %s", line)
            break
    if payload_type is None:
        return sdp

    fields = lines[media_index].split(" ")
    if len(fields) < 4:
        return sdp
    payload_types = fields[3:]
    if payload_type not in payload_types:
        return sdp
    reordered = [payload_type] + [token for token in payload_types if token != payload_type]
    lines[media_index] = " ".join(fields[:3] + reordered)

    if extension_line:
        following = lines[media_index + 1] if media_index + 1 < len(lines) else None
        if following != extension_line:
            lines.insert(media_index + 1, extension_line)

    return separator.join(lines)


def rewrite_sdp(
    sdp: str,
    codecs: Sequence[CodecDescriptor],
    matchers: Iterable[str] | None = None,
    extension_line: str | None = None,
) -> str:
    """Move the preferred codec's payload type to the front of the video media line.

    The description is returned unchanged when the preferred codec is not
    supported locally, when there is no video section, or when the video
    section carries no matching ``rtpmap`` attribute. Parse failures are logged
    and the original text is returned so call setup can still proceed.
    """

    wanted = normalise_matchers(matchers)
    try:
        if not wanted or find_preferred_codec(codecs, wanted) is None:
            return sdp
        return _rewrite(sdp, wanted, extension_line)
    except Exception:
        logger.exception("Failed to rewrite SDP for the preferred codec")
        return sdp


class CodecPreferenceRewriter:
    """Bind the local codec list and preferences for repeated rewrites."""

    def __init__(
        self,
        codecs: Sequence[CodecDescriptor],
        matchers: Iterable[str] | None = None,
        extension_line: str | None = AV1_DEPENDENCY_DESCRIPTOR_EXTMAP,
    ) -> None:
        self._codecs = tuple(codecs)
        self._matchers = normalise_matchers(matchers)
        self._extension_line = extension_line

    @property
    def matchers(self) -> tuple[str, ...]:
        return self._matchers

    @property
    def codecs(self) -> tuple[CodecDescriptor, ...]:
        return self._codecs

    def support(self) -> CodecSupport:
        return codec_support(self._codecs, self._matchers)

    def rewrite(self, sdp: str) -> str:
        return rewrite_sdp(sdp, self._codecs, self._matchers, self._extension_line)


def video_codecs_from_sdp(sdp_text: str) -> tuple[CodecDescriptor, ...]:
    """Extract the video codecs declared in an SDP blob, in preference order."""

    try:
        session_description = aiortc_sdp.SessionDescription.parse(sdp_text)
    except Exception as exc:
        raise ValueError("Invalid SDP") from exc

    codecs: list[CodecDescriptor] = []
    for media in session_description.media:
        if media.kind != "video":
            continue
        for codec in media.rtp.codecs:
            fmtp = ";".join(
                f"{key}={value}" if value is not None else str(key)
                for key, value in codec.parameters.items()
            )
            codecs.append(
                CodecDescriptor(
                    mime_type=codec.mimeType,
                    clock_rate=codec.clockRate,
                    payload_type=str(codec.payloadType),
                    fmtp=fmtp or None,
                )
            )
    return tuple(codecs)


__all__ = [
    "AV1_DEPENDENCY_DESCRIPTOR_EXTMAP",
    "CodecDescriptor",
    "CodecPreferenceRewriter",
    "CodecSupport",
    "DEFAULT_CODEC_MATCHERS",
    "codec_support",
    "find_preferred_codec",
    "matches_codec",
    "normalise_matchers",
    "rewrite_sdp",
    "video_codecs_from_sdp",
]
