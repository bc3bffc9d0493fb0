"""
DASH MPD parsing for a single, caller-selected Representation.

Supports static presentations addressed through SegmentTemplate (with or
without SegmentTimeline), SegmentList and SegmentBase. Segments of every
Period are concatenated; the first segment of each Period after the first
carries a discontinuity flag.

Common encryption (cenc, cens, cbc1, cbcs) encrypts individual samples
inside the container and cannot be undone by whole-segment decryption, so
those schemes are rejected. A ContentProtection element that declares no
scheme at all is ambiguous and is resolved by the configured cipher scheme.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin

import isodate
from lxml import etree

from ..errors import ManifestMalformedError, UnsupportedFeatureError
from .model import (
    ByteRange,
    CipherScheme,
    KeyMethod,
    KeyRef,
    Locator,
    SegmentDescriptor,
    StreamManifest,
)

MP4_PROTECTION_SCHEME = "urn:mpeg:dash:mp4protection:2011"
SAMPLE_ENCRYPTION_SCHEMES = ("cenc", "cens", "cbc1", "cbcs")

_TEMPLATE_RE = re.compile(r"\$(RepresentationID|Number|Time|Bandwidth)(?:%0(\d+)d)?\$|\$\$")


@dataclass(frozen=True)
class Representation:
    """One selectable rendition of an MPD."""

    id: str
    bandwidth: int
    mime_type: Optional[str] = None
    codecs: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


def _local(el) -> str:
    return etree.QName(el).localname


def _children(el, name: str) -> list:
    if el is None:
        return []
    return [c for c in el if isinstance(c.tag, str) and _local(c) == name]


def _child(el, name: str):
    found = _children(el, name)
    return found[0] if found else None


def _attr(el, name: str) -> Optional[str]:
    """Attribute lookup by local name, ignoring namespaces (cenc:default_KID)."""
    for key, value in el.attrib.items():
        if key == name or etree.QName(key).localname == name:
            return value
    return None


def _load(text: str):
    try:
        root = etree.fromstring(text.encode("utf-8"))
    except etree.XMLSyntaxError as e:
        raise ManifestMalformedError(f"Unparsable MPD: {e}") from e
    if _local(root) != "MPD":
        raise ManifestMalformedError(f"Root element is {_local(root)}, expected MPD")
    return root


def _seconds(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        duration = isodate.parse_duration(value)
    except (isodate.ISO8601Error, ValueError) as e:
        raise ManifestMalformedError(f"Invalid duration: {value!r}") from e
    if not hasattr(duration, "total_seconds"):
        raise ManifestMalformedError(f"Calendar durations are not supported: {value!r}")
    return duration.total_seconds()


def _int(value: Optional[str], default: Optional[int], what: str) -> Optional[int]:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ManifestMalformedError(f"Invalid {what}: {value!r}") from e


def _base_url(el, parent: str) -> str:
    base = _child(el, "BaseURL")
    if base is None or not (base.text or "").strip():
        return parent
    return urljoin(parent, base.text.strip())


def _expand(template: str, values: Dict[str, object]) -> str:
    def substitute(match):
        if match.group(0) == "$$":
            return "$"
        value = values.get(match.group(1))
        if value is None:
            raise ManifestMalformedError(f"Template identifier ${match.group(1)}$ has no value")
        if match.group(2):
            return f"{int(value):0{int(match.group(2))}d}"
        return str(value)

    return _TEMPLATE_RE.sub(substitute, template)


def _range(value: Optional[str]) -> Optional[ByteRange]:
    if not value:
        return None
    first, sep, last = value.partition("-")
    try:
        start, end = int(first), int(last)
    except ValueError as e:
        raise ManifestMalformedError(f"Invalid byte range: {value!r}") from e
    if not sep or end < start:
        raise ManifestMalformedError(f"Invalid byte range: {value!r}")
    return ByteRange(start, end - start + 1)


def _pairs(period) -> List[Tuple[object, object]]:
    return [
        (adaptation, rep)
        for adaptation in _children(period, "AdaptationSet")
        for rep in _children(adaptation, "Representation")
    ]


def representations(text: str) -> List[Representation]:
    """List the Representations of an MPD (first occurrence of each id)."""
    root = _load(text)
    found: Dict[str, Representation] = {}
    for period in _children(root, "Period"):
        for adaptation, rep in _pairs(period):
            rep_id = rep.get("id")
            if not rep_id or rep_id in found:
                continue
            found[rep_id] = Representation(
                id=rep_id,
                bandwidth=_int(rep.get("bandwidth"), 0, "bandwidth"),
                mime_type=rep.get("mimeType") or adaptation.get("mimeType"),
                codecs=rep.get("codecs") or adaptation.get("codecs"),
                width=_int(rep.get("width"), None, "width"),
                height=_int(rep.get("height"), None, "height"),
            )
    return list(found.values())


def _select(period, representation_id: Optional[str]):
    pairs = _pairs(period)
    if representation_id is not None:
        for adaptation, rep in pairs:
            if rep.get("id") == representation_id:
                return adaptation, rep
        raise ManifestMalformedError(
            f"Representation {representation_id!r} not found in period {period.get('id')!r}"
        )
    if len(pairs) == 1:
        return pairs[0]
    if not pairs:
        raise ManifestMalformedError(f"Period {period.get('id')!r} has no Representation")
    raise UnsupportedFeatureError(
        "MPD has several Representations; select one with representation_id"
    )


def _key_ref(adaptation, rep, cipher_scheme: Optional[CipherScheme]) -> KeyRef:
    protections = _children(adaptation, "ContentProtection") + _children(rep, "ContentProtection")
    if not protections:
        return KeyRef.unencrypted()

    kid = None
    for cp in protections:
        kid = kid or _attr(cp, "default_KID")
        if (cp.get("schemeIdUri") or "").lower() != MP4_PROTECTION_SCHEME:
            continue
        value = (cp.get("value") or "").lower()
        if value in SAMPLE_ENCRYPTION_SCHEMES:
            raise UnsupportedFeatureError(f"Sample encryption scheme {value!r} is not supported")
        if value:
            raise UnsupportedFeatureError(f"Unknown protection scheme {value!r}")

    if cipher_scheme is None:
        raise UnsupportedFeatureError(
            "ContentProtection does not declare a scheme; configure cipher_scheme"
        )
    if CipherScheme(cipher_scheme) is CipherScheme.NONE:
        return KeyRef.unencrypted()

    identifier = kid.replace("-", "").lower() if kid else f"representation:{rep.get('id')}"
    return KeyRef(KeyMethod.INLINE, identifier=identifier)


def _merged(levels, name: str):
    """Merge a multiple-segment-info element across Period/AdaptationSet/Representation.

    Returns (attributes, elements from least to most specific) or None.
    """
    attrs: Dict[str, str] = {}
    elements = []
    for level in levels:
        el = _child(level, name)
        if el is not None:
            attrs.update(el.attrib)
            elements.append(el)
    if not elements:
        return None
    return attrs, elements


def _timeline_entries(timeline, period_ticks: Optional[float]):
    """Yield (start time, duration) in timescale units."""
    current = 0
    entries = _children(timeline, "S")
    for position, s in enumerate(entries):
        d = _int(s.get("d"), None, "S@d")
        if not d or d <= 0:
            raise ManifestMalformedError("SegmentTimeline entry without a positive duration")
        current = _int(s.get("t"), current, "S@t")
        repeat = _int(s.get("r"), 0, "S@r")
        if repeat < 0:
            following = entries[position + 1].get("t") if position + 1 < len(entries) else None
            end = _int(following, None, "S@t") if following is not None else period_ticks
            if end is None:
                raise ManifestMalformedError("Open-ended SegmentTimeline repeat without a period duration")
            repeat = max(math.ceil((end - current) / d) - 1, 0)
        for _ in range(repeat + 1):
            yield current, d
            current += d


def _template_segments(attrs, elements, base, rep, period_duration):
    media = attrs.get("media")
    if not media:
        raise ManifestMalformedError("SegmentTemplate without media attribute")
    timescale = _int(attrs.get("timescale"), 1, "timescale") or 1
    number = _int(attrs.get("startNumber"), 1, "startNumber")
    values = {"RepresentationID": rep.get("id"), "Bandwidth": rep.get("bandwidth")}

    init = None
    if attrs.get("initialization"):
        init = Locator(urljoin(base, _expand(attrs["initialization"], values)))

    timeline = None
    for el in elements:
        if _child(el, "SegmentTimeline") is not None:
            timeline = _child(el, "SegmentTimeline")

    found = []
    if timeline is not None:
        ticks = period_duration * timescale if period_duration is not None else None
        for time, d in _timeline_entries(timeline, ticks):
            uri = urljoin(base, _expand(media, dict(values, Number=number, Time=time)))
            found.append((Locator(uri), d / timescale))
            number += 1
    elif attrs.get("duration"):
        duration = _int(attrs["duration"], None, "SegmentTemplate@duration")
        if duration <= 0:
            raise ManifestMalformedError("SegmentTemplate@duration must be positive")
        if period_duration is None:
            raise ManifestMalformedError("SegmentTemplate@duration without a period duration")
        seconds = duration / timescale
        for position in range(math.ceil(period_duration / seconds)):
            time = position * duration
            uri = urljoin(base, _expand(media, dict(values, Number=number, Time=time)))
            found.append((Locator(uri), seconds))
            number += 1
    else:
        raise ManifestMalformedError("SegmentTemplate needs @duration or a SegmentTimeline")
    return init, found


def _list_segments(attrs, elements, base):
    timescale = _int(attrs.get("timescale"), 1, "timescale") or 1
    duration = _int(attrs.get("duration"), 0, "SegmentList@duration") / timescale

    init = None
    urls = []
    for el in elements:
        initialization = _child(el, "Initialization")
        if initialization is not None:
            init = Locator(
                urljoin(base, initialization.get("sourceURL") or ""),
                _range(initialization.get("range")),
            )
        urls = _children(el, "SegmentURL") or urls

    found = [
        (Locator(urljoin(base, url.get("media") or ""), _range(url.get("mediaRange"))), duration)
        for url in urls
    ]
    return init, found


def parse(
    text: str,
    base_uri: str,
    representation_id: Optional[str] = None,
    cipher_scheme: Optional[CipherScheme] = None,
) -> StreamManifest:
    """Parse a static MPD into a StreamManifest for one Representation.

    Args:
        text: MPD document
        base_uri: URL the MPD was loaded from
        representation_id: Representation to process; optional when the MPD
            has exactly one
        cipher_scheme: How to treat ContentProtection that declares no scheme

    Raises:
        ManifestMalformedError: Unparsable document or addressing
        UnsupportedFeatureError: Live MPDs, sample encryption, ambiguous
            rendition selection or protection
    """
    root = _load(text)
    if root.get("type", "static") == "dynamic":
        raise UnsupportedFeatureError("Dynamic (live) MPDs are not supported")

    periods = _children(root, "Period")
    if not periods:
        raise ManifestMalformedError("MPD has no Period")

    mpd_base = _base_url(root, base_uri)
    total = _seconds(root.get("mediaPresentationDuration"))
    starts = [_seconds(p.get("start")) for p in periods]

    initialization = None
    segments = []
    sequence = None

    for index, period in enumerate(periods):
        period_duration = _seconds(period.get("duration"))
        if period_duration is None:
            start = starts[index] or 0.0
            if index + 1 < len(periods) and starts[index + 1] is not None:
                period_duration = starts[index + 1] - start
            elif total is not None:
                period_duration = total - start

        adaptation, rep = _select(period, representation_id)
        base = _base_url(rep, _base_url(adaptation, _base_url(period, mpd_base)))
        key = _key_ref(adaptation, rep, cipher_scheme)
        levels = (period, adaptation, rep)

        template = _merged(levels, "SegmentTemplate")
        seglist = _merged(levels, "SegmentList")
        if template is not None:
            init, found = _template_segments(*template, base, rep, period_duration)
            first_number = _int(template[0].get("startNumber"), 1, "startNumber")
        elif seglist is not None:
            init, found = _list_segments(*seglist, base)
            first_number = _int(seglist[0].get("startNumber"), 1, "startNumber")
        else:
            # SegmentBase or bare BaseURL: the whole resource is one segment
            init, found = None, [(Locator(base), period_duration or 0.0)]
            first_number = 1

        if init is not None:
            if initialization is None:
                initialization = init
            elif init != initialization:
                raise UnsupportedFeatureError("Initialization section changes between periods")

        if sequence is None:
            sequence = first_number
        for position, (locator, duration) in enumerate(found):
            segments.append(
                SegmentDescriptor(
                    sequence=sequence,
                    locator=locator,
                    key=key,
                    duration=duration,
                    discontinuity=index > 0 and position == 0,
                )
            )
            sequence += 1

    return StreamManifest(tuple(segments), initialization=initialization, source_format="dash")
