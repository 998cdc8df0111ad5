from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from render_service.clients.library import AssetLibrary, LibraryAsset
from render_service.models.api import (
    AudioMergeRequest,
    AudioProcessRequest,
    AudioTimelineRequest,
    JobRequest,
    RenderVideoRequest,
    RenderWaveformRequest,
    TimelinePreviewRequest,
    WaveformImageRequest,
)
from render_service.render.compiler import ResolvedSources

REMOTE_SCHEMES = ("http://", "https://")


class ResourceResolutionError(ValueError):
    """A reference could not be turned into a usable local path or URL."""


def _is_file(path: Path) -> bool:
    # Names the OS rejects outright (too long, embedded NUL) are simply not files.
    try:
        return path.is_file()
    except (OSError, ValueError):
        return False


def _best_file_links(asset: LibraryAsset) -> list[str]:
    return [f.link for f in asset.ranked_files() if f.link]


def _preview_url(asset: LibraryAsset) -> list[str]:
    return [asset.preview_url] if asset.preview_url else []


def _canonical_url(asset: LibraryAsset) -> list[str]:
    return [asset.url] if asset.url else []


# Candidate order for a library asset; the first usable candidate wins.
LIBRARY_SOURCE_PRECEDENCE: tuple[Callable[[LibraryAsset], list[str]], ...] = (
    _best_file_links,
    _preview_url,
    _canonical_url,
)


@dataclass(frozen=True)
class ResolvedResource:
    kind: str  # "local" | "remote"
    location: str

    @property
    def is_remote(self) -> bool:
        return self.kind == "remote"


class ResourceResolver:
    def __init__(
        self,
        output_dir: str | Path,
        alias_prefixes: Sequence[str] = ("/outputs/", "outputs/", "outputs:"),
        max_input_bytes: Optional[int] = None,
        library: Optional[AssetLibrary] = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.output_dir = Path(output_dir).resolve()
        # Longest prefix first so "/outputs/" wins over "outputs/".
        self.alias_prefixes = sorted((p for p in alias_prefixes if p), key=len, reverse=True)
        self.max_input_bytes = max_input_bytes
        self.library = library
        self.log = logger or logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings, library: Optional[AssetLibrary] = None, logger=None) -> "ResourceResolver":
        return cls(
            output_dir=settings.output_path,
            alias_prefixes=settings.output_alias_prefixes,
            max_input_bytes=settings.max_input_bytes,
            library=library,
            logger=logger,
        )

    def resolve(self, reference: Optional[str], field: str = "path", required: bool = False) -> Optional[ResolvedResource]:
        ref = (reference or "").strip()
        if not ref:
            if required:
                raise ResourceResolutionError(f"{field} is required")
            return None
        direct = self._resolve_direct(ref, field)
        if direct is not None:
            return direct
        from_library = self._resolve_from_library(ref, field)
        if from_library is not None:
            return from_library
        raise ResourceResolutionError(f"{field} not found: {ref}")

    def location(self, reference: Optional[str], field: str, required: bool = False) -> Optional[str]:
        resolved = self.resolve(reference, field=field, required=required)
        return resolved.location if resolved else None

    def _resolve_direct(self, ref: str, field: str) -> Optional[ResolvedResource]:
        aliased = self._strip_alias(ref)
        if aliased is not None:
            target = (self.output_dir / aliased).resolve()
            if target != self.output_dir and self.output_dir not in target.parents:
                raise ResourceResolutionError(f"{field} escapes the output directory: {ref}")
            if not _is_file(target):
                raise ResourceResolutionError(f"{field} not found: {ref}")
            return self._local(target, field)
        if ref.lower().startswith(REMOTE_SCHEMES):
            return ResolvedResource(kind="remote", location=ref)
        candidate = Path(ref).expanduser()
        if _is_file(candidate):
            return self._local(candidate.resolve(), field)
        return None

    def _strip_alias(self, ref: str) -> Optional[str]:
        for prefix in self.alias_prefixes:
            if ref.startswith(prefix):
                return ref[len(prefix):].lstrip("/\\")
        return None

    def _local(self, path: Path, field: str) -> ResolvedResource:
        if self.max_input_bytes is not None:
            try:
                size = path.stat().st_size
            except OSError as exc:
                raise ResourceResolutionError(f"{field} unreadable: {exc.strerror or exc}") from exc
            if size > self.max_input_bytes:
                raise ResourceResolutionError(
                    f"{field} too large: {path.name} is {size} bytes (limit {self.max_input_bytes})"
                )
        return ResolvedResource(kind="local", location=str(path))

    def _resolve_from_library(self, ref: str, field: str) -> Optional[ResolvedResource]:
        if self.library is None:
            return None
        asset = self.library.get(ref)
        if asset is None:
            return None
        for candidate in self._library_candidates(asset):
            try:
                resolved = self._resolve_direct(candidate, field)
            except ResourceResolutionError as exc:
                self.log.info("library candidate rejected", extra={"asset_id": ref, "reason": str(exc)})
                continue
            if resolved is not None:
                self.log.info("library asset resolved", extra={"asset_id": ref, "location": resolved.location})
                return resolved
        return None

    def _library_candidates(self, asset: LibraryAsset) -> Iterable[str]:
        for source in LIBRARY_SOURCE_PRECEDENCE:
            yield from source(asset)

    def resolve_request(self, request: JobRequest) -> ResolvedSources:
        """Resolve every reference field of a typed request, in payload order."""
        payload = request.payload
        if isinstance(request, RenderVideoRequest):
            return ResolvedSources(
                background=self.location(payload.background_path, "backgroundPath", required=True),
                audio=self.location(payload.audio_path, "audioPath"),
                music=self.location(payload.music_path, "musicPath"),
            )
        if isinstance(request, RenderWaveformRequest):
            return ResolvedSources(
                background=self.location(payload.background_path, "backgroundPath"),
                audio=self.location(payload.audio_path, "audioPath", required=True),
                music=self.location(payload.music_path, "musicPath"),
            )
        if isinstance(request, AudioMergeRequest):
            return ResolvedSources(
                inputs=[
                    self.location(ref, f"inputs[{index}]", required=True)
                    for index, ref in enumerate(payload.inputs)
                ],
            )
        if isinstance(request, AudioTimelineRequest):
            return ResolvedSources(clips=self._clip_locations(payload.clips))
        if isinstance(request, TimelinePreviewRequest):
            return ResolvedSources(
                background=self.location(payload.background_path, "backgroundPath", required=True),
                clips=self._clip_locations(payload.clips),
            )
        if isinstance(request, AudioProcessRequest):
            return ResolvedSources(audio=self.location(payload.input_path, "inputPath", required=True))
        if isinstance(request, WaveformImageRequest):
            return ResolvedSources(audio=self.location(payload.audio_path, "audioPath", required=True))
        raise ResourceResolutionError(f"unsupported job type: {getattr(request, 'type', request)!r}")

    def _clip_locations(self, clips) -> list[str]:
        return [
            self.location(clip.path, f"clips[{index}].path", required=True)
            for index, clip in enumerate(clips)
        ]
