from __future__ import annotations

from typing import Any, Iterator, Mapping

from .post import WallItem


def _coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        s = value.strip()
        if s.lstrip("-").isdigit():
            return int(s)
    return None


def _coerce_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _size_area(size: Mapping[str, Any]) -> int:
    w = _coerce_int(size.get("width")) or 0
    h = _coerce_int(size.get("height")) or 0
    return w * h


def photo_max_size(photo: Mapping[str, Any]) -> dict[str, Any] | None:
    """
    Largest available rendition of a photo attachment.

    Old photos report 0x0 for every size; in that case the last listed size wins,
    which is the largest one in VK's ordering.
    """
    sizes = photo.get("sizes")
    if not isinstance(sizes, list):
        return None

    best: Mapping[str, Any] | None = None
    for size in sizes:
        if not isinstance(size, Mapping) or not _coerce_str(size.get("url")):
            continue
        if best is None or _size_area(size) >= _size_area(best):
            best = size

    if best is None:
        return None
    return {
        "id": _coerce_int(photo.get("id")) or 0,
        "owner_id": _coerce_int(photo.get("owner_id")) or 0,
        "url": _coerce_str(best.get("url")),
        "width": _coerce_int(best.get("width")) or 0,
        "height": _coerce_int(best.get("height")) or 0,
        "type": _coerce_str(best.get("type")),
    }


def iter_photos(item: Mapping[str, Any]) -> Iterator[dict[str, Any]]:
    """Photo attachments of the post itself, then of every reposted post (copy_history)."""
    sources: list[Mapping[str, Any]] = [item]
    history = item.get("copy_history")
    if isinstance(history, list):
        sources.extend(h for h in history if isinstance(h, Mapping))

    for source in sources:
        attachments = source.get("attachments")
        if not isinstance(attachments, list):
            continue
        for att in attachments:
            if not isinstance(att, Mapping) or att.get("type") != "photo":
                continue
            photo = att.get("photo")
            if not isinstance(photo, Mapping) or not _coerce_int(photo.get("id")):
                continue
            size = photo_max_size(photo)
            if size is not None:
                yield size


def wall_item_from_api(item: Mapping[str, Any]) -> WallItem | None:
    """Best-effort conversion of a `wall.get` item; None when the id fields are missing."""
    post_id = _coerce_int(item.get("id"))
    owner_id = _coerce_int(item.get("owner_id"))
    if post_id is None or owner_id is None:
        return None

    photos: list[str] = []
    for p in iter_photos(item):
        if p["url"] and p["url"] not in photos:
            photos.append(p["url"])

    return WallItem(
        id=post_id,
        owner_id=owner_id,
        date=_coerce_int(item.get("date")) or 0,
        text=_coerce_str(item.get("text")),
        photos=tuple(photos),
    )


def dump_item_from_api(item: Mapping[str, Any]) -> dict[str, Any]:
    """JSON fixture shape used by `dump-wall`."""
    out: dict[str, Any] = {
        "owner_id": _coerce_int(item.get("owner_id")) or 0,
        "id": _coerce_int(item.get("id")) or 0,
        "date": _coerce_int(item.get("date")) or 0,
        "text": _coerce_str(item.get("text")),
    }
    photos = list(iter_photos(item))
    if photos:
        out["photos"] = photos
    return out
