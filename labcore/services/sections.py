from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from labcore.config import settings

# blank keys are stripped away, so no real section can collide with this
UNSECTIONED = ""


@dataclass
class SectionBucket:
    key: str
    title: str
    items: list[Any] = field(default_factory=list)

    @property
    def is_unsectioned(self) -> bool:
        return self.key == UNSECTIONED


def _read(item: Any, name: str, default: Any = None) -> Any:
    if isinstance(item, Mapping):
        return item.get(name, default)
    return getattr(item, name, default)


def section_key(section: str | None) -> str:
    if section is None:
        return UNSECTIONED
    key = str(section).strip()
    return key or UNSECTIONED


def display_title(key: str, titles: Mapping[str, str] | None = None) -> str:
    titles = titles or {}
    title = titles.get(key)
    if title and title.strip():
        return title.strip()
    if key == UNSECTIONED:
        return settings.unsectioned_title
    return key


def group_by_section(items: Iterable[Any], titles: Mapping[str, str] | None = None) -> list[SectionBucket]:
    """Partition fields (or captured results) into ordered section buckets.

    Buckets appear in the order their section is first seen in ``items``, so
    authoring order decides display order; the unsectioned bucket always goes
    last. Items inside a bucket are sorted by ``order`` and keep their input
    order on ties. ``titles`` only changes the label shown for a key.
    """
    buckets: dict[str, SectionBucket] = {}
    for item in items:
        key = section_key(_read(item, "section"))
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = SectionBucket(key=key, title=display_title(key, titles))
        bucket.items.append(item)

    ordered = [bucket for key, bucket in buckets.items() if key != UNSECTIONED]
    if UNSECTIONED in buckets:
        ordered.append(buckets[UNSECTIONED])
    for bucket in ordered:
        bucket.items.sort(key=lambda item: _read(item, "order", 0) or 0)
    return ordered


def section_keys(items: Iterable[Any]) -> list[str]:
    return [bucket.key for bucket in group_by_section(items)]
