"""
render.py — ViewState → what the map renderer and the detail panel consume.

The renderer is an external collaborator: it gets a list of markers
{id, coordinate, is_user_marker}, the selected id, and calls back with a
marker id on click (MapSession.dispatch_click).
"""

from typing import Optional

from whispr.models.session import Marker, SessionView, ViewState, WhisperDetail
from whispr.models.whisper import USER_MARKER_ID, WhisperKind, WhisperRecord
from whispr.services.selection import selected_record

USER_MARKER_TITLE = "Your Location"
_TITLE_PREVIEW_CHARS = 30


def marker_title(record: WhisperRecord) -> str:
    return f"Whisper: {record.body[:_TITLE_PREVIEW_CHARS]}..."


def build_markers(state: ViewState) -> list[Marker]:
    """User marker first (when located), then one marker per record in order."""
    markers: list[Marker] = []
    if state.user_position is not None:
        markers.append(Marker(
            id=USER_MARKER_ID,
            coordinate=state.user_position,
            is_user_marker=True,
            title=USER_MARKER_TITLE,
        ))
    markers.extend(
        Marker(id=r.id, coordinate=r.position, title=marker_title(r))
        for r in state.records
    )
    return markers


def build_detail(record: WhisperRecord) -> WhisperDetail:
    is_media = record.kind in (WhisperKind.IMAGE, WhisperKind.VIDEO)
    return WhisperDetail(
        id=record.id,
        kind=record.kind,
        heading=f"({record.kind.value})",
        body=record.body if record.kind == WhisperKind.TEXT else None,
        media_ref=record.media_ref if is_media else None,
        caption=record.body if is_media and record.body else None,
        emotions=", ".join(record.emotions) or "None",
        listens=f"{record.listen_count}/{record.listen_cap}",
    )


def build_view(session_id: str, state: ViewState) -> SessionView:
    record: Optional[WhisperRecord] = selected_record(state)
    return SessionView(
        session_id=session_id,
        state=state,
        markers=build_markers(state),
        selected_id=state.selected_id,
        detail=build_detail(record) if record is not None else None,
    )
