"""Temporary media hosting for the chat transport."""

from fastapi import APIRouter, Request, Response

from wabridge.api.webhook_auth import get_bridge

router = APIRouter(tags=["media"])


@router.get("/file/{media_id}")
def get_file(media_id: str, request: Request) -> Response:
    item = get_bridge(request).temp_store.get(media_id)
    if item is None:
        return Response(status_code=404, content="not found")
    ascii_name = item.filename.encode("ascii", "ignore").decode()
    filename = "".join(c for c in ascii_name if c.isprintable() and c != '"') or "attachment"
    return Response(
        content=item.content,
        media_type=item.content_type,
        headers={
            "Content-Disposition": f'inline; filename="{filename}"',
            "Cache-Control": "no-store",
        },
    )
