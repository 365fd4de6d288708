#!/usr/bin/env python3
"""
Scrape sources registry.

``sources.json`` maps each blog URL to its scrape settings:

    {
      "https://example.tumblr.com": {
        "added_at": "2024-01-01T10:00:00.000000+00:00",
        "scrape_interval": 1800,
        "download_posts": true,
        "output_location": "blogs/example",
        "last_scraped": "2024-01-02T08:30:00.123456+00:00"
      }
    }

Files written by older versions use ``disable`` and ``output_dir``; both are
read and written back under their current names. Unknown keys are kept.
"""

import os
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from config import config, get_logger
from errors import ConfigError
from lockfile import DataDirLock
from utils import (
    blog_name_from_url,
    normalize_source_url,
    parse_timestamp,
    read_json_file,
    safe_filename,
    split_tagged_url,
    to_iso,
    utc_now,
    validate_url,
    write_json_atomic,
)

logger = get_logger("sources")

LEGACY_KEYS = {"disable": "disabled", "output_dir": "output_location"}
TIMESTAMP_FIELDS = ("added_at", "last_scraped")
SORT_FIELDS = ("url", "name", "added_at", "last_scraped")
NUMERIC_FIELDS = {"scrape_interval": int, "scrape_delay": float, "max_posts": int}


@dataclass
class SourceConfig:
    added_at: Optional[datetime] = None
    scrape_interval: Optional[int] = None
    scrape_delay: Optional[float] = None
    max_posts: Optional[int] = None
    last_scraped: Optional[datetime] = None
    download_posts: bool = False
    disabled: bool = False
    output_location: Optional[str] = None
    no_export: bool = False
    stop_if_no_new_posts: bool = True
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls) if f.name != "extra"]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceConfig":
        known = set(cls.field_names())
        values: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            name = LEGACY_KEYS.get(key, key)
            if name in known:
                # Current key wins over its legacy spelling
                if name != key and name in data:
                    continue
                values[name] = value
            else:
                extra[key] = value
        for name in TIMESTAMP_FIELDS:
            if name in values:
                values[name] = parse_timestamp(values[name])
        for name in ("download_posts", "disabled", "no_export", "stop_if_no_new_posts"):
            if name in values:
                values[name] = bool(values[name])
        for name, kind in NUMERIC_FIELDS.items():
            if values.get(name) is None:
                continue
            try:
                values[name] = kind(values[name])
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid {name} value {values[name]!r}: {e}") from e
        return cls(extra=extra, **values)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        defaults = SourceConfig()
        for name in self.field_names():
            value = getattr(self, name)
            if value == getattr(defaults, name):
                continue
            data[name] = to_iso(value) if name in TIMESTAMP_FIELDS else value
        data.update(self.extra)
        return data

    def effective_scrape_interval(self, default: Optional[int] = None) -> int:
        return int(self.scrape_interval or default or config.DEFAULT_SCRAPE_INTERVAL)

    def effective_scrape_delay(self, default: Optional[float] = None) -> float:
        if self.scrape_delay is not None:
            return float(self.scrape_delay)
        return float(default if default is not None else config.DEFAULT_SCRAPE_DELAY)


def default_output_location(url: str) -> str:
    """``blogs/<blog-name>``, plus ``/<tag>`` for tagged sources."""
    base, tag = split_tagged_url(url)
    location = os.path.join("blogs", safe_filename(blog_name_from_url(base)))
    if tag:
        location = os.path.join(location, safe_filename(tag))
    return location


@dataclass
class Source:
    url: str
    config: SourceConfig

    @property
    def name(self) -> str:
        return blog_name_from_url(self.url)

    @property
    def disabled(self) -> bool:
        return self.config.disabled


class SourcesRegistry:
    """In-memory view of the sources file."""

    def __init__(self, file_path: Optional[str] = None):
        self.file_path = file_path or os.path.join(config.DATA_DIR, config.SOURCES_FILE)
        self._sources: Dict[str, Source] = {}

    @property
    def base_dir(self) -> str:
        return os.path.dirname(os.path.abspath(self.file_path))

    def __len__(self) -> int:
        return len(self._sources)

    def __contains__(self, url: object) -> bool:
        return isinstance(url, str) and normalize_source_url(url) in self._sources

    def __iter__(self) -> Iterator[Source]:
        return iter(list(self._sources.values()))

    def load(self, must_exist: bool = False) -> "SourcesRegistry":
        """(Re)load the registry file.

        Raises:
            ConfigError: The file is missing (with ``must_exist``) or unreadable.
        """
        if not os.path.isfile(self.file_path):
            if must_exist:
                raise ConfigError(f"Sources file not found: {self.file_path}")
            logger.debug(f"No sources file at {self.file_path}, starting empty")
            self._sources = {}
            return self

        try:
            data = read_json_file(self.file_path, default={})
        except (OSError, ValueError) as e:
            raise ConfigError(f"Could not read sources file {self.file_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Sources file {self.file_path} must contain a JSON object")

        self._sources = {}
        for raw_url, raw_config in data.items():
            url = normalize_source_url(raw_url)
            if not isinstance(raw_config, dict):
                logger.warning(f"Ignoring source {raw_url}: config is not an object")
                continue
            self._sources[url] = Source(url=url, config=SourceConfig.from_dict(raw_config))
        logger.debug(f"Loaded {len(self._sources)} sources from {self.file_path}")
        return self

    def save(self) -> None:
        data = {url: source.config.to_dict() for url, source in self._sources.items()}
        with DataDirLock(self.base_dir):
            write_json_atomic(self.file_path, data)
        logger.debug(f"Saved {len(data)} sources to {self.file_path}")

    def get(self, url: str) -> Optional[Source]:
        return self._sources.get(normalize_source_url(url))

    def _apply(self, source_config: SourceConfig, changes: Dict[str, Any]) -> bool:
        known = set(SourceConfig.field_names())
        changed = False
        for key, value in changes.items():
            name = LEGACY_KEYS.get(key, key)
            if name in TIMESTAMP_FIELDS:
                value = parse_timestamp(value)
            if name in known:
                if getattr(source_config, name) != value:
                    setattr(source_config, name, value)
                    changed = True
            elif source_config.extra.get(key) != value:
                source_config.extra[key] = value
                changed = True
        return changed

    def add(self, url: str, **overrides) -> Tuple[Source, bool]:
        """Add a source, or apply ``overrides`` to an existing one.

        Returns:
            (source, created)
        """
        url = normalize_source_url(url)
        if not validate_url(url):
            raise ValueError(f"Invalid source URL: {url}")

        overrides = {k: v for k, v in overrides.items() if v is not None}
        existing = self._sources.get(url)
        if existing is not None:
            changed = self._apply(existing.config, overrides)
            if not existing.config.output_location:
                existing.config.output_location = default_output_location(url)
                changed = True
            if changed:
                logger.info(f"Updated source {url}")
            return existing, False

        source_config = SourceConfig(added_at=utc_now(), output_location=default_output_location(url))
        self._apply(source_config, overrides)
        source = Source(url=url, config=source_config)
        self._sources[url] = source
        logger.info(f"Added source {url}")
        return source, True

    def remove(self, url: str) -> bool:
        removed = self._sources.pop(normalize_source_url(url), None)
        if removed is not None:
            logger.info(f"Removed source {removed.url}")
        return removed is not None

    def update(self, url: str, **changes) -> Source:
        source = self.get(url)
        if source is None:
            raise KeyError(f"Unknown source: {url}")
        self._apply(source.config, changes)
        return source

    def output_dir(self, source: Source) -> str:
        location = source.config.output_location or default_output_location(source.url)
        return os.path.join(self.base_dir, location)

    def sources(self, sort: Optional[str] = None, order: Optional[str] = None) -> List[Source]:
        """All sources, optionally sorted.

        ``sort`` is one of url, name, added_at or last_scraped. Timestamps
        default to newest first, names to alphabetical; sources without a
        value sort as the smallest.
        """
        items = list(self._sources.values())
        if not sort:
            return items
        if sort not in SORT_FIELDS:
            raise ValueError(f"Unsupported sort field: {sort}")

        if order is None:
            order = "desc" if sort in TIMESTAMP_FIELDS else "asc"

        def sort_key(source: Source):
            if sort == "url":
                return (1, source.url)
            if sort == "name":
                return (1, source.name)
            value = getattr(source.config, sort)
            return (0, 0.0) if value is None else (1, value.timestamp())

        return sorted(items, key=sort_key, reverse=(order == "desc"))

    def active_sources(self) -> List[Source]:
        return [source for source in self._sources.values() if not source.config.disabled]
