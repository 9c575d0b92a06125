from __future__ import annotations

import json
from pathlib import Path

import pytest

from loopwatch.inbox import ActionInbox, FileActionTransport, parse_action_request
from loopwatch.models import ActionChoice, ActionReply, ActionRequest, InvalidInputError


def _request_payload(request_id: str = "act-1") -> dict:
    return {
        "id": request_id,
        "prompt": "Implementation complete. What would you like to do?",
        "choices": [
            {"id": "merge", "label": "Merge the PR"},
            {"id": "review", "label": "Request review"},
        ],
        "default": "review",
    }


def _inbox(tmp_path: Path) -> ActionInbox:
    return ActionInbox(FileActionTransport(tmp_dir=tmp_path))


def _write_request(tmp_path: Path, payload: object, feature: str = "demo") -> Path:
    path = tmp_path / f"ralph-loop-{feature}.action.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_parse_action_request_builds_typed_request() -> None:
    request = parse_action_request(_request_payload())
    assert request == ActionRequest(
        id="act-1",
        prompt="Implementation complete. What would you like to do?",
        choices=(ActionChoice("merge", "Merge the PR"), ActionChoice("review", "Request review")),
        default="review",
    )
    assert request is not None and request.choice_ids() == ("merge", "review")


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"id": "x", "prompt": "p", "choices": []},
        {"id": 1, "prompt": "p", "choices": [], "default": "a"},
        {"id": "x", "prompt": "p", "choices": [{"id": "a"}], "default": "a"},
    ],
)
def test_parse_action_request_rejects_incomplete_payloads(payload: object) -> None:
    assert parse_action_request(payload) is None


def test_read_action_request_missing_file(tmp_path: Path) -> None:
    assert _inbox(tmp_path).read_action_request("demo") is None


def test_read_action_request_invalid_json_is_logged(tmp_path: Path) -> None:
    (tmp_path / "ralph-loop-demo.action.json").write_text("{oops", encoding="utf-8")
    assert _inbox(tmp_path).read_action_request("demo") is None
    assert "failed to parse action request" in (tmp_path / "loopwatch.log").read_text(encoding="utf-8")


def test_read_action_request_rejects_bad_feature(tmp_path: Path) -> None:
    with pytest.raises(InvalidInputError):
        _inbox(tmp_path).read_action_request("../demo")


def test_answer_writes_compact_reply_and_suppresses_request(tmp_path: Path) -> None:
    _write_request(tmp_path, _request_payload())
    inbox = _inbox(tmp_path)
    request = inbox.pending_request("demo")
    assert request is not None

    reply = inbox.answer("demo", request, "merge")

    assert reply == ActionReply(id="act-1", choice="merge")
    reply_text = (tmp_path / "ralph-loop-demo.action.reply.json").read_text(encoding="utf-8")
    assert json.loads(reply_text) == {"id": "act-1", "choice": "merge"}
    assert "\n" not in reply_text
    assert not (tmp_path / "ralph-loop-demo.action.reply.json.tmp").exists()
    assert inbox.last_handled_id("demo") == "act-1"
    assert inbox.pending_request("demo") is None


def test_new_request_id_is_surfaced_again(tmp_path: Path) -> None:
    _write_request(tmp_path, _request_payload("act-1"))
    inbox = _inbox(tmp_path)
    request = inbox.pending_request("demo")
    assert request is not None
    inbox.answer("demo", request, "review")

    _write_request(tmp_path, _request_payload("act-2"))
    follow_up = inbox.pending_request("demo")
    assert follow_up is not None and follow_up.id == "act-2"


def test_answer_rejects_unknown_choice(tmp_path: Path) -> None:
    inbox = _inbox(tmp_path)
    request = parse_action_request(_request_payload())
    assert request is not None
    with pytest.raises(InvalidInputError):
        inbox.answer("demo", request, "deploy")
    assert not (tmp_path / "ralph-loop-demo.action.reply.json").exists()


def test_cancel_replies_with_default(tmp_path: Path) -> None:
    inbox = _inbox(tmp_path)
    request = parse_action_request(_request_payload())
    assert request is not None

    reply = inbox.cancel("demo", request)

    assert reply.choice == "review"
    payload = json.loads((tmp_path / "ralph-loop-demo.action.reply.json").read_text(encoding="utf-8"))
    assert payload == {"id": "act-1", "choice": "review"}


def test_write_action_reply_requires_request_id(tmp_path: Path) -> None:
    with pytest.raises(InvalidInputError):
        _inbox(tmp_path).write_action_reply("demo", ActionReply(id="", choice="merge"))


def test_cleanup_removes_mailbox_files_and_marker(tmp_path: Path) -> None:
    request_path = _write_request(tmp_path, _request_payload())
    inbox = _inbox(tmp_path)
    request = inbox.pending_request("demo")
    assert request is not None
    inbox.answer("demo", request, "merge")

    inbox.cleanup_action_files("demo")
    inbox.cleanup_action_files("demo")

    assert not request_path.exists()
    assert not (tmp_path / "ralph-loop-demo.action.reply.json").exists()
    assert inbox.last_handled_id("demo") is None
