from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


class LibraryFile(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    link: Optional[str] = None
    quality: Optional[str] = None
    width: Optional[int] = None


class LibraryAsset(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    files: List[LibraryFile] = Field(default_factory=list)
    preview_url: Optional[str] = None
    url: Optional[str] = None

    def ranked_files(self) -> list[LibraryFile]:
        """File variants best first: ``hd`` quality, then widest."""
        usable = [f for f in self.files if f.link]
        return sorted(usable, key=lambda f: (f.quality == "hd", f.width or 0), reverse=True)


def _coerce_asset(raw: Any) -> Optional[LibraryAsset]:
    if not isinstance(raw, dict):
        return None
    data = dict(raw)
    data["id"] = str(data.get("id", ""))
    return LibraryAsset.model_validate(data)


class AssetLibrary:
    def get(self, asset_id: str) -> Optional[LibraryAsset]: ...  # pragma: no cover


class JsonFileAssetLibrary(AssetLibrary):
    """Read-only view of a ``{"items": [...]}`` library file."""

    def __init__(self, path: str | Path, logger: logging.Logger | None = None) -> None:
        self.path = Path(path)
        self.log = logger or logging.getLogger(__name__)

    def get(self, asset_id: str) -> Optional[LibraryAsset]:
        wanted = str(asset_id)
        for item in self._items():
            if str(item.get("id")) != wanted:
                continue
            try:
                return _coerce_asset(item)
            except ValidationError:
                self.log.warning("library entry malformed", extra={"asset_id": wanted}, exc_info=True)
                return None
        return None

    def _items(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            self.log.warning("library file unreadable", extra={"path": str(self.path)}, exc_info=True)
            return []
        items = data.get("items") if isinstance(data, dict) else None
        return [item for item in items or [] if isinstance(item, dict)]


class HttpAssetLibrary(AssetLibrary):
    """Looks assets up in a remote library service: ``GET <base_url>/<id>``."""

    def __init__(self, base_url: str, timeout: float = 10.0, logger: logging.Logger | None = None) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.log = logger or logging.getLogger(__name__)

    def get(self, asset_id: str) -> Optional[LibraryAsset]:
        url = f"{self.base_url}/{quote(str(asset_id), safe='')}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(url)
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError):
            self.log.warning("library lookup failed", extra={"asset_id": asset_id, "url": url}, exc_info=True)
            return None
        if isinstance(body, dict) and isinstance(body.get("item"), dict):
            body = body["item"]
        try:
            return _coerce_asset(body)
        except ValidationError:
            self.log.warning("library entry malformed", extra={"asset_id": asset_id}, exc_info=True)
            return None


def build_asset_library(settings, logger: logging.Logger | None = None) -> AssetLibrary:
    if settings.library_url:
        return HttpAssetLibrary(settings.library_url, timeout=settings.library_timeout, logger=logger)
    return JsonFileAssetLibrary(settings.library_file, logger=logger)
