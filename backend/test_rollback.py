import pytest

from errors import RollbackFailure
from rollback import Compensator, RollbackLedger, UndoAction, UndoKind


def _recording_compensator(log, fail_on=()):
    def handler(action):
        if action.target in fail_on:
            raise OSError(f"cannot undo {action.target}")
        log.append((action.kind, action.target))
    return Compensator({kind: handler for kind in UndoKind})


def test_actions_run_in_reverse_order():
    log = []
    ledger = RollbackLedger()
    ledger.register(UndoAction.of(UndoKind.RELEASE_PORT, 25565, environment_id="local"))
    ledger.register(UndoAction.of(UndoKind.DELETE_DIRECTORY, "/servers/alice/abc"))
    ledger.register(UndoAction.of(UndoKind.DELETE_RECORD, "abc"))

    assert [a.kind for a in ledger.actions] == [UndoKind.RELEASE_PORT, UndoKind.DELETE_DIRECTORY, UndoKind.DELETE_RECORD]

    report = ledger.execute(_recording_compensator(log))

    assert report.clean
    assert log == [
        (UndoKind.DELETE_RECORD, "abc"),
        (UndoKind.DELETE_DIRECTORY, "/servers/alice/abc"),
        (UndoKind.RELEASE_PORT, "25565"),
    ]


def test_failure_does_not_stop_remaining_actions():
    log = []
    ledger = RollbackLedger()
    ledger.register(UndoAction.of(UndoKind.RELEASE_PORT, 25565))
    ledger.register(UndoAction.of(UndoKind.DELETE_DIRECTORY, "/servers/alice/abc"))
    ledger.register(UndoAction.of(UndoKind.DELETE_RECORD, "abc"))

    report = ledger.execute(_recording_compensator(log, fail_on={"/servers/alice/abc"}))

    assert not report.clean
    assert len(report.failures) == 1
    assert isinstance(report.failures[0], RollbackFailure)
    assert "/servers/alice/abc" in report.failures[0].message
    assert log == [(UndoKind.DELETE_RECORD, "abc"), (UndoKind.RELEASE_PORT, "25565")]
    assert len(report.executed) == 3


def test_ledger_executes_only_once():
    log = []
    ledger = RollbackLedger()
    ledger.register(UndoAction.of(UndoKind.DELETE_FILE, "/servers/a/eula.txt"))
    compensator = _recording_compensator(log)

    ledger.execute(compensator)
    second = ledger.execute(compensator)

    assert len(log) == 1
    assert second.executed == []
    with pytest.raises(RuntimeError):
        ledger.register(UndoAction.of(UndoKind.DELETE_FILE, "/servers/a/other.txt"))


def test_missing_handler_is_reported():
    ledger = RollbackLedger()
    ledger.register(UndoAction.of(UndoKind.REMOVE_CONTAINER, "mc-abc"))
    report = ledger.execute(Compensator())
    assert len(report.failures) == 1
    assert "remove_container" in report.failures[0].message


def test_undo_actions_are_values():
    a = UndoAction.of(UndoKind.RELEASE_PORT, 25565, environment_id="local")
    b = UndoAction.of(UndoKind.RELEASE_PORT, 25565, environment_id="local")
    assert a == b
    assert hash(a) == hash(b)
    assert a.param("environment_id") == "local"
    assert a.to_dict()["params"] == {"environment_id": "local"}
