# engine/planner/manifest.py

"""
Manifest planner.

A manifest is a JSON array of entries:

    [
        {"url": "css/site.css", "css": true},
        {"url": "js/vendor.js", "head": true},
        {"slug": "app", "url": "js/app.js", "dependsOn": ["lib"]},
        {"slug": "lib", "url": "js/lib.js", "cache": true}
    ]

"head" and "css" entries are eager resources, loaded in order before the
session starts. Every other entry becomes an async unit and needs a slug.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import urljoin, urlparse

import pydantic
import requests
from pydantic import ConfigDict

from config.settings import settings
from engine.planner.exceptions import InvalidManifest, ManifestNotFound
from engine.scheduler.dag import TaskDescriptor
from engine.utils import get_logger

log = get_logger("planner.manifest")


# -------------------------
# MODELS
# -------------------------

class ManifestEntry(pydantic.BaseModel):
    url: str = pydantic.Field(min_length=1)
    slug: Optional[str] = None
    depends_on: List[str] = pydantic.Field(default_factory=list, alias="dependsOn")
    head: bool = False
    css: bool = False
    cache: bool = False

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @pydantic.model_validator(mode='after')
    def validate_slug(self) -> 'ManifestEntry':
        if not self.head and not self.css and not self.slug:
            raise ValueError("async entries must set a 'slug' to track dependencies")
        return self

    @property
    def is_eager(self) -> bool:
        return self.head or self.css


@dataclass
class LoadPlan:
    """
    Everything one load session needs, resolved from a manifest.
    """

    css: List[str] = field(default_factory=list)
    head: List[str] = field(default_factory=list)
    units: List[TaskDescriptor] = field(default_factory=list)

    @property
    def eager(self) -> List[str]:
        # stylesheets first, then head scripts
        return self.css + self.head


# -------------------------
# PUBLIC ENTRYPOINTS
# -------------------------

def parse_manifest(
    data: Any,
    *,
    cache_enabled: bool = True,
    base: Optional[str] = None,
) -> LoadPlan:
    """
    Build a LoadPlan from decoded manifest JSON.

    Raises:
        InvalidManifest
    """
    if not isinstance(data, list):
        raise InvalidManifest("manifest must be an array of objects")

    plan = LoadPlan()

    for index, raw in enumerate(data):
        try:
            entry = ManifestEntry.model_validate(raw)
        except pydantic.ValidationError as exc:
            raise InvalidManifest(f"entry #{index} is invalid: {exc}") from exc

        url = resolve_resource(entry.url, base)

        if entry.head:
            plan.head.append(url)
        elif entry.css:
            plan.css.append(url)
        else:
            plan.units.append(
                TaskDescriptor(
                    unit_id=entry.slug,
                    resource=url,
                    depends_on=frozenset(entry.depends_on),
                    cache=entry.cache and cache_enabled,
                )
            )

    log.debug(
        f"Planned {len(plan.units)} unit(s), "
        f"{len(plan.css)} stylesheet(s), {len(plan.head)} head script(s)"
    )
    return plan


def load_manifest(
    source: str,
    *,
    cache_enabled: bool = True,
    session: Optional[requests.Session] = None,
) -> LoadPlan:
    """
    Read a manifest from a local path or an http(s) URL and plan it.

    Relative resource locators are resolved against the manifest location.

    Raises:
        ManifestNotFound
        InvalidManifest
    """
    if _is_http(source):
        data = _read_remote(source, session)
        base = source
    else:
        path = _local_path(source)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ManifestNotFound(f"{source} could not be read: {exc}") from exc
        data = _decode(text, source)
        base = str(path.resolve().parent) + "/"

    return parse_manifest(data, cache_enabled=cache_enabled, base=base)


def resolve_resource(url: str, base: Optional[str]) -> str:
    """
    Resolve a manifest locator against the manifest location.

    Absolute URLs and absolute paths are returned untouched.
    """
    if base is None or _is_http(url) or url.startswith("file://"):
        return url
    if _is_http(base):
        return urljoin(base, url)
    if Path(url).is_absolute():
        return url
    return str(Path(base) / url)


# -------------------------
# INTERNAL HELPERS
# -------------------------

def _is_http(source: str) -> bool:
    return urlparse(source).scheme in ("http", "https")


def _local_path(source: str) -> Path:
    if source.startswith("file://"):
        return Path(urlparse(source).path)
    return Path(source)


def _read_remote(url: str, session: Optional[requests.Session]) -> Any:
    http = session or requests.Session()
    try:
        response = http.get(
            url,
            headers=settings.HTTP_HEADERS,
            timeout=settings.REQUEST_TIMEOUT,
        )
        response.raise_for_status()
    except requests.exceptions.RequestException as exc:
        raise ManifestNotFound(f"{url} could not be loaded: {exc}") from exc
    finally:
        if session is None:
            http.close()

    return _decode(response.text, url)


def _decode(text: str, source: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidManifest(f"{source} is not valid JSON: {exc}") from exc
