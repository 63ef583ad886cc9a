"""Shared fixtures and in-memory collaborators for the sync tests."""

import asyncio
import copy
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from bgm_komga import (
    DEFAULT_CONFIG,
    CoverImage,
    Library,
    NotFoundError,
    SearchCandidate,
    Series,
    TransportError,
    merge_dict,
    parse_subject,
)


def make_series(
    series_id: str,
    name: str,
    *,
    library_id: str = "lib-1",
    tags: Optional[List[str]] = None,
    links: Optional[List[Dict[str, str]]] = None,
) -> Dict[str, Any]:
    return {
        "id": series_id,
        "name": name,
        "libraryId": library_id,
        "metadata": {
            "status": "ONGOING",
            "summary": "",
            "publisher": "",
            "tags": list(tags or []),
            "links": list(links or []),
            "alternateTitles": [],
        },
    }


def make_subject(
    *,
    subject_id: int = 42,
    summary: str = "s",
    tags: Sequence[str] = ("t",),
    infobox: Optional[List[Dict[str, Any]]] = None,
    cover: str = "https://lain.bgm.tv/pic/cover/l/42.jpg",
) -> Dict[str, Any]:
    return {
        "id": subject_id,
        "summary": summary,
        "tags": [{"name": tag, "count": 3} for tag in tags],
        "infobox": list(infobox or []),
        "images": {"large": cover, "common": cover, "small": cover},
    }


class FakeKomga:
    """Komga stand-in that applies patches to its own records."""

    def __init__(
        self,
        series: Optional[List[Dict[str, Any]]] = None,
        libraries: Optional[List[Library]] = None,
    ):
        self.libraries = libraries or [Library(id="lib-1", name="Manga")]
        self.records: Dict[str, Dict[str, Any]] = {
            item["id"]: copy.deepcopy(item) for item in series or []
        }
        self.patches: List[Tuple[str, Dict[str, Any]]] = []
        self.covers: Dict[str, List[str]] = {}
        self.deleted_covers: List[Tuple[str, str]] = []
        self.uploads: List[Tuple[str, bytes, str, str]] = []
        self.series_listings: List[Optional[List[str]]] = []
        self.fail_listing = False
        self.fail_upload = False
        self.fail_patch_for: Optional[str] = None
        self.on_get_series: Optional[Callable[[str], None]] = None

    async def list_libraries(self) -> List[Library]:
        if self.fail_listing:
            raise TransportError("Listing Komga libraries failed (0): connection refused")
        return list(self.libraries)

    async def list_series(self, library_ids: Optional[Sequence[str]] = None) -> List[Series]:
        self.series_listings.append(None if library_ids is None else list(library_ids))
        records = list(self.records.values())
        if library_ids is not None:
            records = [r for r in records if r["libraryId"] in library_ids]
        return [Series.from_payload(copy.deepcopy(r)) for r in records]

    async def get_series(self, series_id: str) -> Series:
        if self.on_get_series is not None:
            self.on_get_series(series_id)
        return Series.from_payload(copy.deepcopy(self.records[series_id]))

    async def patch_series_metadata(self, series_id: str, payload: Dict[str, Any]) -> None:
        await asyncio.sleep(0)
        if self.fail_patch_for == series_id:
            raise RuntimeError("boom")
        self.patches.append((series_id, copy.deepcopy(payload)))
        self.records[series_id]["metadata"].update(copy.deepcopy(payload))

    async def list_covers(self, series_id: str) -> List[str]:
        return list(self.covers.get(series_id, []))

    async def delete_cover(self, series_id: str, cover_id: str) -> None:
        self.covers[series_id].remove(cover_id)
        self.deleted_covers.append((series_id, cover_id))

    async def upload_cover(
        self, series_id: str, image: bytes, filename: str, mime_type: str
    ) -> None:
        if self.fail_upload:
            raise TransportError("Uploading cover failed (500): oops")
        self.uploads.append((series_id, image, filename, mime_type))
        self.covers.setdefault(series_id, []).append(f"uploaded-{len(self.uploads)}")

    def metadata(self, series_id: str) -> Dict[str, Any]:
        return self.records[series_id]["metadata"]


class FakeBangumi:
    """Bangumi stand-in that records calls and how many overlap."""

    def __init__(
        self,
        matches: Optional[Dict[str, List[str]]] = None,
        subjects: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.matches = matches or {}
        self.subjects = subjects or {}
        self.search_errors: set = set()
        self.failing_images: set = set()
        self.search_calls: List[str] = []
        self.subject_calls: List[str] = []
        self.image_calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def _track(self) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
        finally:
            self.in_flight -= 1

    async def search_subjects(self, name: str) -> List[SearchCandidate]:
        self.search_calls.append(name)
        await self._track()
        if name in self.search_errors:
            raise TransportError(f"Searching Bangumi for {name!r} failed (502): bad gateway")
        return [
            SearchCandidate(id=subject_id, name=name, name_cn="")
            for subject_id in self.matches.get(name, [])
        ]

    async def get_subject(self, subject_id: str):
        self.subject_calls.append(subject_id)
        await self._track()
        if subject_id not in self.subjects:
            raise NotFoundError(f"Bangumi subject {subject_id} does not exist")
        return parse_subject(self.subjects[subject_id], subject_id)

    async def download_image(self, url: str) -> CoverImage:
        self.image_calls.append(url)
        if url in self.failing_images:
            raise TransportError(f"Downloading cover {url} failed (404): gone")
        return CoverImage(content=b"\xff\xd8jpeg", filename="cover.jpg", mime_type="image/jpeg")


@pytest.fixture
def config() -> Dict[str, Any]:
    return merge_dict(
        DEFAULT_CONFIG,
        {
            "komga": {
                "base_url": "http://komga.test",
                "username": "reader",
                "password": "secret",
            },
            "bangumi": {"access_token": "token-123"},
        },
    )
