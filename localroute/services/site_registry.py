from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

from pydantic import ValidationError

from localroute.errors import SiteValidationError
from localroute.schemas import FIELD_LABELS, Site


logger = logging.getLogger(__name__)

LEGACY_BLOCK_START = "define"
LEGACY_BOOLEAN_KEYS = ("force_ssl", "force_dns")
LEGACY_BOOLEAN_LITERALS = {"true": True, "false": False}


def _entry_label(entry: dict[str, object], index: int) -> str:
    for key in ("network_domain", "domain"):
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return f"#{index}"


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    field = str(first["loc"][0]) if first.get("loc") else "site"
    label = FIELD_LABELS.get(field, field)
    if first["type"] == "missing":
        return f"{label} is required"
    message = str(first["msg"]).removeprefix("Value error, ")
    return f"{label} {message}"


def _parse_legacy_value(raw_value: str) -> str:
    return raw_value.strip().replace('"', "").replace(",", "").strip()


def parse_legacy_blocks(content: str) -> list[dict[str, object]]:
    """Parse ``define { key: value }`` blocks.

    Flags default to ``false`` when a block omits them, unlike the JSON
    document which requires them. Kept for compatibility with older files.
    """
    entries: list[dict[str, object]] = []
    current: dict[str, object] | None = None

    for line_number, line in enumerate(content.splitlines(), start=1):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue

        if trimmed.endswith("{") and trimmed[:-1].strip() == LEGACY_BLOCK_START:
            if current is not None:
                raise SiteValidationError(
                    f"Line {line_number}: nested define block.",
                    entity=_entry_label(current, len(entries) + 1),
                )
            current = {}
            continue

        if trimmed == "}" and current is not None:
            entries.append(current)
            current = None
            continue

        if current is None:
            raise SiteValidationError(
                f"Line {line_number}: expected 'define {{' but found {trimmed[:40]!r}.",
                entity=f"#{len(entries) + 1}",
            )

        key, separator, value = trimmed.partition(":")
        key = key.strip()
        value = _parse_legacy_value(value)
        if separator and key and value:
            current[key] = value

    if current is not None:
        raise SiteValidationError(
            "Site list ends inside an unterminated define block.",
            entity=_entry_label(current, len(entries) + 1),
        )

    for entry in entries:
        for key in LEGACY_BOOLEAN_KEYS:
            raw = entry.get(key)
            if raw is None:
                entry[key] = False
            elif isinstance(raw, str) and raw.lower() in LEGACY_BOOLEAN_LITERALS:
                entry[key] = LEGACY_BOOLEAN_LITERALS[raw.lower()]
    return entries


def parse_document(content: str) -> list[dict[str, object]]:
    try:
        document = json.loads(content)
    except json.JSONDecodeError as exc:
        raise SiteValidationError(f"Site list is not valid JSON: {exc}") from exc

    if not isinstance(document, dict) or not isinstance(document.get("sites"), list):
        raise SiteValidationError('Site list must contain a "sites" array.')

    entries: list[dict[str, object]] = []
    for index, item in enumerate(document["sites"], start=1):
        if not isinstance(item, dict):
            raise SiteValidationError(f"Site entry must be an object, got {type(item).__name__}.", entity=f"#{index}")
        entries.append(item)
    return entries


def validate_entries(entries: Sequence[dict[str, object]]) -> tuple[Site, ...]:
    sites: list[Site] = []
    seen: dict[str, str] = {}

    for index, entry in enumerate(entries, start=1):
        label = _entry_label(entry, index)
        try:
            site = Site.model_validate(entry)
        except ValidationError as exc:
            raise SiteValidationError(
                f"Invalid site {label}: {_validation_message(exc)}",
                entity=label,
                diagnostics={"errors": exc.errors(include_url=False)},
            ) from exc
        sites.append(site)

    for site in sites:
        key = site.domain.lower()
        if key in seen:
            raise SiteValidationError(
                f"Duplicate site {site.domain}: already declared as {seen[key]}.",
                entity=site.domain,
            )
        seen[key] = site.domain

    return tuple(sites)


@dataclass(frozen=True, slots=True)
class SiteRegistry:
    """Immutable snapshot of validated sites; a reload builds a new one."""

    sites: tuple[Site, ...]
    source: str | None = None

    def __iter__(self) -> Iterator[Site]:
        return iter(self.sites)

    def __len__(self) -> int:
        return len(self.sites)

    def tls_sites(self) -> tuple[Site, ...]:
        return tuple(site for site in self.sites if site.tls_required)

    def dns_sites(self) -> tuple[Site, ...]:
        return tuple(site for site in self.sites if site.dns_override)

    @classmethod
    def load(cls, raw: str, source: str | None = None) -> SiteRegistry:
        raw = raw.lstrip("\ufeff")
        if raw.lstrip().startswith(("{", "[")):
            entries = parse_document(raw)
            encoding = "document"
        else:
            entries = parse_legacy_blocks(raw)
            encoding = "legacy"

        sites = validate_entries(entries)
        logger.debug("Loaded %d site(s) from %s encoding", len(sites), encoding)
        return cls(sites=sites, source=source)

    @classmethod
    def load_file(cls, path: str | Path) -> SiteRegistry:
        site_path = Path(path)
        try:
            raw = site_path.read_text(encoding="utf-8-sig")
        except FileNotFoundError as exc:
            raise SiteValidationError(f"Site list not found: {site_path}", entity=str(site_path)) from exc
        except OSError as exc:
            raise SiteValidationError(f"Cannot read site list {site_path}: {exc}", entity=str(site_path)) from exc
        return cls.load(raw, source=str(site_path))
