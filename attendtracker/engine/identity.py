"""Identity resolution: raw observations to canonical participant records."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable

from attendtracker.engine.models import Observation, ParticipantRecord

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown"

# Icon ligatures and labels that leak out of the meeting UI into tile text.
FILLER_TOKENS = frozenset(
    {
        "back_hand",
        "closed_caption",
        "devices",
        "domain",
        "frame_person",
        "keep",
        "keep_off",
        "keep_outline",
        "keyboard_arrow_down",
        "mic_none",
        "mic_off",
        "more_horiz",
        "more_vert",
        "pan_tool",
        "push_pin",
        "visual_effects",
    }
)

PLACEHOLDER_NAMES = frozenset({"", "unknown", "you", "participant", "guest", "presentation"})

_ROLE_SUFFIX = re.compile(
    r"\(\s*(?:you|host|meeting host|co-host|organi[sz]er|presentation|presenting)\s*\)",
    re.IGNORECASE,
)
_TRAILING_LABEL = re.compile(r"\s+(?:meeting host|is presenting|presenting|presentation)\s*$", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def _is_filler_token(token: str) -> bool:
    return token.lower() in FILLER_TOKENS


def clean_display_name(raw: str | None) -> str:
    """Strip captions, mic-state suffixes and UI chrome from a tile name."""
    if not raw:
        return ""
    # Captions and mic state render on lines below the name.
    name_line = ""
    for line in str(raw).splitlines():
        tokens = [token for token in line.split() if not _is_filler_token(token)]
        if tokens:
            name_line = " ".join(tokens)
            break
    name_line = _ROLE_SUFFIX.sub(" ", name_line)
    name_line = _TRAILING_LABEL.sub("", name_line)
    return _WHITESPACE.sub(" ", name_line).strip()


def normalize_name(name: str) -> str:
    return _WHITESPACE.sub(" ", name).strip().casefold()


def is_placeholder_name(name: str) -> bool:
    return normalize_name(name) in PLACEHOLDER_NAMES


@dataclass(frozen=True)
class ResolvedIdentity:
    observation: Observation
    display_name: str
    identity_hint: str | None
    name_key: str | None


@dataclass(frozen=True)
class Resolution:
    identities: list[ResolvedIdentity]
    unidentified_count: int = 0


def resolve_observations(observations: Iterable[Observation]) -> Resolution:
    """Deduplicate one tick of observations; the first occurrence of a key wins."""
    seen_hints: set[str] = set()
    seen_names: set[str] = set()
    identities: list[ResolvedIdentity] = []
    unidentified = 0

    for observation in observations:
        name = clean_display_name(observation.display_name)
        placeholder = is_placeholder_name(name)
        hint = (observation.identity_hint or "").strip() or None
        name_key = None if placeholder else normalize_name(name)

        if hint is None and name_key is None:
            unidentified += 1
            continue

        if hint is not None:
            if hint in seen_hints:
                continue
            seen_hints.add(hint)
        elif name_key in seen_names:
            continue

        if name_key is not None:
            seen_names.add(name_key)

        identities.append(
            ResolvedIdentity(
                observation=observation,
                display_name=UNKNOWN_NAME if placeholder else name,
                identity_hint=hint,
                name_key=name_key,
            )
        )

    return Resolution(identities=identities, unidentified_count=unidentified)


@dataclass(frozen=True)
class BoundObservation:
    identity_key: str
    display_name: str
    observation: Observation


@dataclass
class BindResult:
    bound: list[BoundObservation] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    merged: list[tuple[str, str]] = field(default_factory=list)
    unidentified_count: int = 0

    @property
    def observed_keys(self) -> set[str]:
        return {item.identity_key for item in self.bound}


class ParticipantDirectory:
    """Owns every ParticipantRecord of a session, indexed by hint and by name."""

    def __init__(self) -> None:
        self.records: dict[str, ParticipantRecord] = {}
        self._by_hint: dict[str, ParticipantRecord] = {}
        self._by_name: dict[str, ParticipantRecord] = {}

    def __len__(self) -> int:
        return len(self.records)

    def get(self, identity_key: str) -> ParticipantRecord | None:
        return self.records.get(identity_key)

    def bind(self, resolution: Resolution, now: float) -> BindResult:
        result = BindResult(unidentified_count=resolution.unidentified_count)
        bound_keys: set[str] = set()

        for identity in resolution.identities:
            record = self._match(identity, result)
            if record is None:
                record = self._create(identity, now)
                result.created.append(record.identity_key)
            elif identity.display_name != UNKNOWN_NAME:
                record.display_name = identity.display_name

            if identity.name_key is not None and identity.name_key not in self._by_name:
                self._by_name[identity.name_key] = record

            if record.identity_key in bound_keys:
                continue
            bound_keys.add(record.identity_key)
            result.bound.append(
                BoundObservation(
                    identity_key=record.identity_key,
                    display_name=record.display_name,
                    observation=identity.observation,
                )
            )
        return result

    def _match(self, identity: ResolvedIdentity, result: BindResult) -> ParticipantRecord | None:
        by_hint = self._by_hint.get(identity.identity_hint) if identity.identity_hint else None
        by_name = self._by_name.get(identity.name_key) if identity.name_key else None

        if by_hint is not None:
            if by_name is not None and by_name is not by_hint and by_name.identity_hint is None:
                self._absorb(target=by_hint, absorbed=by_name)
                result.merged.append((by_name.identity_key, by_hint.identity_key))
            return by_hint

        if by_name is None:
            return None
        if identity.identity_hint is None:
            return by_name
        if by_name.identity_hint is None:
            by_name.identity_hint = identity.identity_hint
            self._by_hint[identity.identity_hint] = by_name
            return by_name
        # Same name, different avatars: two people.
        return None

    def _create(self, identity: ResolvedIdentity, now: float) -> ParticipantRecord:
        if identity.identity_hint is not None:
            key = identity.identity_hint
        else:
            key = f"name:{identity.name_key}"
        record = ParticipantRecord(
            identity_key=key,
            display_name=identity.display_name,
            identity_hint=identity.identity_hint,
            joined_at=now,
        )
        self.records[key] = record
        if identity.identity_hint is not None:
            self._by_hint[identity.identity_hint] = record
        logger.debug("[identity] new participant %s (%s)", record.display_name, key)
        return record

    def _absorb(self, target: ParticipantRecord, absorbed: ParticipantRecord) -> None:
        logger.info(
            "[identity] merging %s into %s after shared identity hint appeared",
            absorbed.identity_key,
            target.identity_key,
        )
        target.joined_at = min(target.joined_at, absorbed.joined_at)
        target.attended_seconds = max(target.attended_seconds, absorbed.attended_seconds)
        target.joined_late = target.joined_late and absorbed.joined_late
        if absorbed.is_host:
            target.is_host = True
        self.records.pop(absorbed.identity_key, None)
        for name_key, record in list(self._by_name.items()):
            if record is absorbed:
                self._by_name[name_key] = target
