"""Tests for the tracker CLI dependency store."""

import json
import subprocess
from unittest.mock import patch

import pytest

from workloop.models import WorkUnitStatus
from workloop.store import StoreContractError, StoreUnavailableError
from workloop.tracker import TrackerCliStore


def _completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess([], returncode, stdout=stdout, stderr=stderr)


def _json(payload) -> subprocess.CompletedProcess:
    return _completed(json.dumps(payload))


@pytest.fixture
def tracker(config) -> TrackerCliStore:
    return TrackerCliStore(config)


class TestTrackerCommands:

    def test_list_ready_uses_group_query(self, tracker: TrackerCliStore) -> None:
        payload = [
            {"id": "wl-2", "title": "Writer", "status": "open", "priority": 1,
             "dependencies": [{"id": "wl-1"}]},
            {"id": "wl-3", "title": "Docs", "status": "in_progress", "priority": 3},
        ]
        with patch("workloop.tracker.subprocess.run", return_value=_json(payload)) as run:
            units = tracker.list_ready("wl-1-mol")

        assert run.call_args[0][0] == ["bd", "--no-daemon", "ready", "--mol=wl-1-mol", "--json"]
        assert [u.id for u in units] == ["wl-2", "wl-3"]
        assert units[0].dependencies == ["wl-1"]
        assert units[1].status == WorkUnitStatus.IN_PROGRESS

    def test_priority_zero_survives(self, tracker: TrackerCliStore) -> None:
        with patch("workloop.tracker.subprocess.run", return_value=_json([{"id": "wl-2", "priority": 0}])):
            assert tracker.list_ready("wl-1-mol")[0].priority == 0

    def test_empty_output_is_an_empty_list(self, tracker: TrackerCliStore) -> None:
        with patch("workloop.tracker.subprocess.run", return_value=_completed("")):
            assert tracker.list_units("wl-1", status=WorkUnitStatus.BLOCKED) == []

    def test_show_accepts_single_item_list(self, tracker: TrackerCliStore) -> None:
        payload = [{"id": "wl-2", "title": "Writer", "description": "- [ ] header"}]
        with patch("workloop.tracker.subprocess.run", return_value=_json(payload)):
            unit = tracker.show("wl-2")
        assert unit.description == "- [ ] header"

    def test_create_with_description_sends_body_on_stdin(self, tracker: TrackerCliStore) -> None:
        responses = [_json({"id": "wl-7", "title": "Epic"}), _completed()]
        with patch("workloop.tracker.subprocess.run", side_effect=responses) as run:
            unit = tracker.create_work_unit("Epic", kind="epic", description="full task")

        create_cmd = run.call_args_list[0][0][0]
        assert "--type=epic" in create_cmd
        update_call = run.call_args_list[1]
        assert update_call[0][0] == ["bd", "update", "wl-7", "--body-file", "-"]
        assert update_call[1]["input"] == "full task"
        assert unit.description == "full task"

    def test_instantiate_group_returns_ref(self, tracker: TrackerCliStore) -> None:
        with patch("workloop.tracker.subprocess.run", return_value=_completed("wl-9\n")):
            assert tracker.instantiate_group("wl-1") == "wl-9"

    def test_update_status_uses_tracker_spelling(self, tracker: TrackerCliStore) -> None:
        with patch("workloop.tracker.subprocess.run", return_value=_completed()) as run:
            tracker.update_status("wl-2", WorkUnitStatus.IN_PROGRESS)
        assert run.call_args[0][0] == ["bd", "update", "wl-2", "--status=in_progress"]

    def test_comments_parsed(self, tracker: TrackerCliStore) -> None:
        payload = [{"body": "[ATTEMPT:1] Failed: x", "author": "loop"}, {"text": "note"}, "junk"]
        with patch("workloop.tracker.subprocess.run", return_value=_json(payload)):
            comments = tracker.list_comments("wl-2")
        assert [c.body for c in comments] == ["[ATTEMPT:1] Failed: x", "note"]

    @pytest.mark.parametrize("payload, expected", [
        ({"percent": 66.6}, 67),
        ({"percent": 140}, 100),
        ({}, 0),
    ])
    def test_progress(self, tracker: TrackerCliStore, payload, expected: int) -> None:
        with patch("workloop.tracker.subprocess.run", return_value=_json(payload)):
            assert tracker.query_progress("wl-1-mol") == expected


class TestTrackerFailures:
    """Every failure to get a usable answer is StoreUnavailableError."""

    def test_missing_binary(self, tracker: TrackerCliStore) -> None:
        with patch("workloop.tracker.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(StoreUnavailableError, match="not found"):
                tracker.ping()

    def test_timeout(self, tracker: TrackerCliStore) -> None:
        error = subprocess.TimeoutExpired(cmd="bd", timeout=60)
        with patch("workloop.tracker.subprocess.run", side_effect=error):
            with pytest.raises(StoreUnavailableError, match="timed out"):
                tracker.list_ready("wl-1-mol")

    def test_nonzero_exit(self, tracker: TrackerCliStore) -> None:
        with patch("workloop.tracker.subprocess.run", return_value=_completed(returncode=1, stderr="no db")):
            with pytest.raises(StoreUnavailableError, match="no db"):
                tracker.ping()

    def test_invalid_json(self, tracker: TrackerCliStore) -> None:
        with patch("workloop.tracker.subprocess.run", return_value=_completed("{oops")):
            with pytest.raises(StoreUnavailableError, match="invalid JSON"):
                tracker.show("wl-2")

    def test_unit_without_id(self, tracker: TrackerCliStore) -> None:
        with patch("workloop.tracker.subprocess.run", return_value=_json([{"title": "?"}])):
            with pytest.raises(StoreUnavailableError):
                tracker.list_ready("wl-1-mol")

    def test_unknown_status_is_a_contract_violation(self, tracker: TrackerCliStore) -> None:
        with patch("workloop.tracker.subprocess.run", return_value=_json([{"id": "wl-2", "status": "zombie"}])):
            with pytest.raises(StoreContractError):
                tracker.list_ready("wl-1-mol")
