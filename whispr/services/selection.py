"""
selection.py — Single-selection state machine over whisper ids.

States: nothing selected | exactly one id selected. All functions are pure
(ViewState in, ViewState out) so the reconciler can chain them.
"""

import logging
from typing import Optional

from whispr.models.session import ViewState
from whispr.models.whisper import WhisperRecord

logger = logging.getLogger(__name__)


def select(state: ViewState, whisper_id: str) -> ViewState:
    """Select ``whisper_id`` if it is on the map; otherwise leave state as is."""
    if not state.has(whisper_id):
        logger.debug("Ignoring selection of unknown whisper %s", whisper_id)
        return state
    if state.selected_id == whisper_id:
        return state
    return state.model_copy(update={"selected_id": whisper_id})


def clear(state: ViewState) -> ViewState:
    if state.selected_id is None:
        return state
    return state.model_copy(update={"selected_id": None})


def prune(state: ViewState) -> ViewState:
    """Drop a selection whose record disappeared (e.g. after a refetch)."""
    if state.selected_id is not None and not state.has(state.selected_id):
        logger.info("Selected whisper %s no longer present; clearing selection", state.selected_id)
        return clear(state)
    return state


def selected_record(state: ViewState) -> Optional[WhisperRecord]:
    if state.selected_id is None:
        return None
    return state.find(state.selected_id)
