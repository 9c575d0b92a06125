"""Action inbox: one-shot request/reply exchange with the loop process.

The loop writes ``ralph-loop-<feature>.action.json``; the supervisor answers
with ``ralph-loop-<feature>.action.reply.json``. ``ActionInbox`` owns the
protocol (idempotency by request id, default-on-cancel) and delegates storage
to a transport, so the file mailbox could be replaced without touching it.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from loopwatch.constants import ACTION_REPLY_SUFFIX, ACTION_REQUEST_SUFFIX
from loopwatch.models import ActionChoice, ActionReply, ActionRequest, InvalidInputError
from loopwatch.utils import (
    _append_log,
    _loop_file_path,
    _read_text_if_exists,
    _remove_if_exists,
    _validate_feature_name,
    _write_json_atomic,
)


def parse_action_request(payload: Any) -> ActionRequest | None:
    if not isinstance(payload, dict):
        return None
    request_id = payload.get("id")
    prompt = payload.get("prompt")
    raw_choices = payload.get("choices")
    default = payload.get("default")
    if (
        not isinstance(request_id, str)
        or not isinstance(prompt, str)
        or not isinstance(raw_choices, list)
        or not isinstance(default, str)
    ):
        return None
    choices: list[ActionChoice] = []
    for raw_choice in raw_choices:
        if (
            not isinstance(raw_choice, dict)
            or not isinstance(raw_choice.get("id"), str)
            or not isinstance(raw_choice.get("label"), str)
        ):
            return None
        choices.append(ActionChoice(id=raw_choice["id"], label=raw_choice["label"]))
    return ActionRequest(id=request_id, prompt=prompt, choices=tuple(choices), default=default)


class FileActionTransport:
    """Mailbox files in the shared loop directory."""

    def __init__(self, tmp_dir: Path | None = None) -> None:
        self.tmp_dir = tmp_dir

    def request_path(self, feature: str) -> Path:
        return _loop_file_path(feature, ACTION_REQUEST_SUFFIX, tmp_dir=self.tmp_dir)

    def reply_path(self, feature: str) -> Path:
        return _loop_file_path(feature, ACTION_REPLY_SUFFIX, tmp_dir=self.tmp_dir)

    def read_request(self, feature: str) -> ActionRequest | None:
        path = self.request_path(feature)
        raw = _read_text_if_exists(path, log_dir=self.tmp_dir)
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            _append_log(f"warning: failed to parse action request JSON at {path}: {exc}", log_dir=self.tmp_dir)
            return None
        request = parse_action_request(payload)
        if request is None:
            _append_log(
                "warning: action request is missing required fields (id, prompt, choices, default) "
                "or has invalid choices",
                log_dir=self.tmp_dir,
            )
        return request

    def write_reply(self, feature: str, reply: ActionReply) -> None:
        # Atomic rename: the loop never observes a half-written reply.
        _write_json_atomic(self.reply_path(feature), {"id": reply.id, "choice": reply.choice}, indent=None)

    def cleanup(self, feature: str) -> None:
        _remove_if_exists(self.request_path(feature))
        _remove_if_exists(self.reply_path(feature))


class ActionInbox:
    def __init__(self, transport: FileActionTransport | None = None) -> None:
        self.transport = transport or FileActionTransport()
        self._last_handled_id: dict[str, str] = {}

    def last_handled_id(self, feature: str) -> str | None:
        return self._last_handled_id.get(feature)

    def read_action_request(self, feature: str) -> ActionRequest | None:
        _validate_feature_name(feature)
        return self.transport.read_request(feature)

    def pending_request(self, feature: str) -> ActionRequest | None:
        """Return the current request unless it has already been answered."""
        request = self.read_action_request(feature)
        if request is None or request.id == self._last_handled_id.get(feature):
            return None
        return request

    def write_action_reply(self, feature: str, reply: ActionReply) -> None:
        _validate_feature_name(feature)
        if not reply.id:
            raise InvalidInputError("action reply must reference a request id")
        self.transport.write_reply(feature, reply)
        self._last_handled_id[feature] = reply.id

    def answer(self, feature: str, request: ActionRequest, choice: str) -> ActionReply:
        if request.choices and choice not in request.choice_ids():
            raise InvalidInputError(
                f"choice '{choice}' is not one of {list(request.choice_ids())} for action {request.id}"
            )
        reply = ActionReply(id=request.id, choice=choice)
        self.write_action_reply(feature, reply)
        return reply

    def cancel(self, feature: str, request: ActionRequest) -> ActionReply:
        reply = ActionReply(id=request.id, choice=request.default)
        self.write_action_reply(feature, reply)
        return reply

    def cleanup_action_files(self, feature: str) -> None:
        _validate_feature_name(feature)
        self.transport.cleanup(feature)
        self._last_handled_id.pop(feature, None)
