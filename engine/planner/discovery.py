from dataclasses import dataclass
from typing import Optional

from bs4 import BeautifulSoup

from engine.planner.exceptions import ManifestNotFound
from engine.planner.manifest import resolve_resource


@dataclass(frozen=True)
class ManifestReference:
    """Where the page says its manifest lives."""

    source: str
    cache_enabled: bool = True


def discover_manifest(html: str, base: Optional[str] = None) -> ManifestReference:
    """
    Find the manifest named by the loader's own script tag.

    The first <script> carrying data-include wins. A data-no-cache
    attribute on that tag (any value) turns caching off.

    Raises:
        ManifestNotFound
    """
    soup = BeautifulSoup(html, "html.parser")

    for script in soup.find_all("script"):
        include = script.get("data-include")
        if include is None:
            continue
        if not include.strip():
            raise ManifestNotFound("data-include attribute is empty")

        return ManifestReference(
            source=resolve_resource(include.strip(), base),
            cache_enabled=not script.has_attr("data-no-cache"),
        )

    raise ManifestNotFound(
        "data-include='{includefile}.json' must be an attribute of the loader script tag"
    )
