from enum import Enum, IntEnum
from typing import Dict, FrozenSet, Iterable, Optional

from .paths import host_of


class ResourceKind(Enum):
    STYLESHEET = "stylesheet"
    SCRIPT = "script"
    IMAGE = "image"
    PDF = "pdf"
    VIDEO = "video"
    PAGE = "page"
    OTHER = "other"


class PriorityClass(IntEnum):
    # lower value is fetched and rewritten first
    CRITICAL = 0
    HIGH = 1
    NORMAL = 2


# One table per policy. Adding a kind means adding a row to each of them;
# _check_tables() refuses to import a half-updated module.

FILTER_NAMES: Dict[ResourceKind, str] = {
    ResourceKind.STYLESHEET: "css",
    ResourceKind.SCRIPT: "js",
    ResourceKind.IMAGE: "images",
    ResourceKind.PDF: "pdf",
    ResourceKind.VIDEO: "video",
    ResourceKind.PAGE: "html",
    ResourceKind.OTHER: "other",
}

class HostScope(Enum):
    ANY = "any"
    SITE = "site"  # target host and its subdomains
    HOST = "host"  # target host only


HOST_SCOPES: Dict[ResourceKind, HostScope] = {
    ResourceKind.STYLESHEET: HostScope.ANY,
    ResourceKind.SCRIPT: HostScope.ANY,
    ResourceKind.IMAGE: HostScope.ANY,
    ResourceKind.PDF: HostScope.ANY,
    ResourceKind.VIDEO: HostScope.ANY,
    ResourceKind.PAGE: HostScope.SITE,
    ResourceKind.OTHER: HostScope.HOST,
}

PRIORITIES: Dict[ResourceKind, PriorityClass] = {
    ResourceKind.STYLESHEET: PriorityClass.CRITICAL,
    ResourceKind.SCRIPT: PriorityClass.CRITICAL,
    ResourceKind.PAGE: PriorityClass.HIGH,
    ResourceKind.IMAGE: PriorityClass.NORMAL,
    ResourceKind.PDF: PriorityClass.NORMAL,
    ResourceKind.VIDEO: PriorityClass.NORMAL,
    ResourceKind.OTHER: PriorityClass.NORMAL,
}

WEBP_ELIGIBLE: Dict[ResourceKind, bool] = {
    ResourceKind.STYLESHEET: False,
    ResourceKind.SCRIPT: False,
    ResourceKind.IMAGE: True,
    ResourceKind.PDF: False,
    ResourceKind.VIDEO: False,
    ResourceKind.PAGE: False,
    ResourceKind.OTHER: False,
}

RESOURCE_FILTER_NAMES: FrozenSet[str] = frozenset(FILTER_NAMES.values())


def _check_tables() -> None:
    for table in (FILTER_NAMES, HOST_SCOPES, PRIORITIES, WEBP_ELIGIBLE):
        missing = set(ResourceKind) - set(table)
        if missing:
            raise RuntimeError(f"policy table lacks {sorted(k.name for k in missing)}")


_check_tables()


def filter_name(kind: ResourceKind) -> str:
    return FILTER_NAMES[kind]


def priority_class(kind: ResourceKind) -> PriorityClass:
    return PRIORITIES[kind]


def is_webp_eligible(kind: ResourceKind) -> bool:
    return WEBP_ELIGIBLE[kind]


def is_same_site(url: str, target_host: str) -> bool:
    host = host_of(url)
    target = target_host.lower()
    if not host or not target:
        return False
    return host == target or host.endswith("." + target)


def allowed_by_filter(
    kind: ResourceKind, resource_filter: Optional[Iterable[str]]
) -> bool:
    if resource_filter is None:
        return True
    return FILTER_NAMES[kind] in {r.lower() for r in resource_filter}


def should_fetch(
    kind: ResourceKind,
    url: str,
    target_host: str,
    resource_filter: Optional[Iterable[str]] = None,
) -> bool:
    if not allowed_by_filter(kind, resource_filter):
        return False
    scope = HOST_SCOPES[kind]
    if scope is HostScope.ANY:
        return True
    if scope is HostScope.HOST:
        return bool(target_host) and host_of(url) == target_host.lower()
    return is_same_site(url, target_host)


def parse_resource_filter(value: Optional[Iterable[str]]) -> Optional[FrozenSet[str]]:
    """Normalize an allow-list such as ``["images", "CSS"]``.

    ``None`` or an empty list means "allow everything". Unknown names raise
    ``ValueError``.
    """
    if value is None:
        return None
    names = set()
    for item in value:
        for part in str(item).split(","):
            part = part.strip().lower()
            if part:
                names.add(part)
    if not names:
        return None
    unknown = names - RESOURCE_FILTER_NAMES
    if unknown:
        raise ValueError(
            "unknown resource type(s): %s (choose from %s)"
            % (", ".join(sorted(unknown)), ", ".join(sorted(RESOURCE_FILTER_NAMES)))
        )
    return frozenset(names)
