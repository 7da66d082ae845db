"""Tests for the credential probe and mismatch resolution."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest
from conftest import FakeEngine, ManualClock, make_config

from milouctl.consistency import (
    CompatibilityResult,
    ConsistencyValidator,
    MismatchAction,
    MismatchResolver,
    ValidationReport,
    interpret_query,
)
from milouctl.credentials.bundle import SecretBundle
from milouctl.errors import ConflictError
from milouctl.providers.base import ExecResult
from milouctl.volumes import VolumeInspector

REJECTED = ExecResult(2, stderr='FATAL:  password authentication failed for user "x"')


def _handler(query: ExecResult, *, ready: bool = True):
    def handle(name: str, command: Sequence[str], env: Mapping[str, str] | None) -> ExecResult:
        if command[0] == "pg_isready":
            return ExecResult(0 if ready else 2, "accepting connections")
        return query

    return handle


def _validator(tmp_path: Path, engine: FakeEngine, clock: ManualClock) -> ConsistencyValidator:
    config = make_config(tmp_path)
    return ConsistencyValidator(
        config,
        engine,
        VolumeInspector(config, engine),
        clock=clock,
        sleep=clock.sleep,
    )


def test_missing_database_volume_is_compatible(tmp_path: Path, clock: ManualClock) -> None:
    """Without a database volume there is nothing to probe."""
    engine = FakeEngine()

    report = _validator(tmp_path, engine, clock).validate(SecretBundle.generate())

    assert report.result is CompatibilityResult.COMPATIBLE
    assert not report.probed
    assert engine.calls_named("run_detached") == []


def test_empty_database_volume_is_compatible(tmp_path: Path, clock: ManualClock) -> None:
    """An empty volume is initialised by whichever credentials come first."""
    engine = FakeEngine(volumes={"milou_pgdata": 12})

    report = _validator(tmp_path, engine, clock).validate(SecretBundle.generate())

    assert report.result is CompatibilityResult.COMPATIBLE


def test_probe_accepts_matching_credentials(tmp_path: Path, clock: ManualClock) -> None:
    """The probe mounts the volume, waits for readiness and runs a query."""
    engine = FakeEngine(
        volumes={"milou_pgdata": 80_000},
        exec_handler=_handler(ExecResult(0, " ?column? \n 1")),
    )
    bundle = SecretBundle.generate()

    report = _validator(tmp_path, engine, clock).validate(bundle)

    assert report.result is CompatibilityResult.COMPATIBLE
    (_, name, image, env, volumes) = engine.calls_named("run_detached")[0]
    assert name == "milou-credential-probe"
    assert image == "postgres:15-alpine"
    assert env["POSTGRES_PASSWORD"] == bundle.db_password
    assert volumes == {"milou_pgdata": "/var/lib/postgresql/data"}
    assert [call[2][0] for call in engine.calls_named("exec")] == ["pg_isready", "psql"]
    assert "milou-credential-probe" not in engine.containers


def test_probe_detects_rejected_credentials(tmp_path: Path, clock: ManualClock) -> None:
    """Authentication failures mean the credentials are incompatible."""
    engine = FakeEngine(volumes={"milou_pgdata": 80_000}, exec_handler=_handler(REJECTED))

    report = _validator(tmp_path, engine, clock).validate(SecretBundle.generate())

    assert report.result is CompatibilityResult.INCOMPATIBLE


def test_probe_times_out_as_inconclusive(tmp_path: Path, clock: ManualClock) -> None:
    """A database that never becomes ready yields an inconclusive result."""
    engine = FakeEngine(
        volumes={"milou_pgdata": 80_000},
        exec_handler=_handler(REJECTED, ready=False),
    )

    report = _validator(tmp_path, engine, clock).validate(SecretBundle.generate())

    assert report.result is CompatibilityResult.INCONCLUSIVE
    assert clock.now == pytest.approx(10.0)
    assert "milou-credential-probe" not in engine.containers


def test_probe_engine_failure_is_inconclusive(tmp_path: Path, clock: ManualClock) -> None:
    """Engine errors never escape the validator."""
    engine = FakeEngine(volumes={"milou_pgdata": 80_000})
    engine.fail("run_detached")

    report = _validator(tmp_path, engine, clock).validate(SecretBundle.generate())

    assert report.result is CompatibilityResult.INCONCLUSIVE
    assert "probe could not run" in report.detail


def test_running_database_is_queried_in_place(tmp_path: Path, clock: ManualClock) -> None:
    """A live database container answers the check; no second server touches the volume."""
    engine = FakeEngine(
        volumes={"milou_pgdata": 80_000},
        containers={"milou-database": "running"},
        exec_handler=_handler(ExecResult(0, " ?column? \n 1")),
    )
    bundle = SecretBundle.generate()

    report = _validator(tmp_path, engine, clock).validate(bundle)

    assert report.result is CompatibilityResult.COMPATIBLE
    assert engine.calls_named("run_detached") == []
    assert engine.calls_named("remove_container") == []
    (_, name, command) = engine.calls_named("exec")[0]
    assert name == "milou-database"
    assert command[0] == "psql"
    assert command[command.index("-U") + 1] == bundle.db_user
    assert engine.containers["milou-database"].status == "running"


def test_running_database_rejection_is_incompatible(tmp_path: Path, clock: ManualClock) -> None:
    """Rejected credentials on the live container are reported as incompatible."""
    engine = FakeEngine(
        volumes={"milou_pgdata": 80_000},
        containers={"milou-database": "running"},
        exec_handler=_handler(REJECTED),
    )

    report = _validator(tmp_path, engine, clock).validate(SecretBundle.generate())

    assert report.result is CompatibilityResult.INCOMPATIBLE
    assert engine.calls_named("run_detached") == []


def test_stopped_database_uses_throwaway_container(tmp_path: Path, clock: ManualClock) -> None:
    """An exited database container leaves the volume free for a throwaway server."""
    engine = FakeEngine(
        volumes={"milou_pgdata": 80_000},
        containers={"milou-database": "exited"},
        exec_handler=_handler(ExecResult(0, "1")),
    )

    report = _validator(tmp_path, engine, clock).validate(SecretBundle.generate())

    assert report.result is CompatibilityResult.COMPATIBLE
    assert len(engine.calls_named("run_detached")) == 1


def test_unreadable_container_state_is_inconclusive(tmp_path: Path, clock: ManualClock) -> None:
    """When the engine cannot report the database container nothing is started."""
    engine = FakeEngine(volumes={"milou_pgdata": 80_000})
    engine.fail("container_state")

    report = _validator(tmp_path, engine, clock).validate(SecretBundle.generate())

    assert report.result is CompatibilityResult.INCONCLUSIVE
    assert engine.calls_named("run_detached") == []


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (ExecResult(0, "1"), CompatibilityResult.COMPATIBLE),
        (ExecResult(2, stderr='role "milou_user_x" does not exist'), CompatibilityResult.INCOMPATIBLE),
        (ExecResult(2, stderr="no pg_hba.conf entry for host"), CompatibilityResult.INCOMPATIBLE),
        (ExecResult(2, stderr="connection refused"), CompatibilityResult.INCONCLUSIVE),
    ],
)
def test_interpret_query(result: ExecResult, expected: CompatibilityResult) -> None:
    """Query output maps onto the three outcomes."""
    assert interpret_query(result).result is expected


INCOMPATIBLE = ValidationReport(CompatibilityResult.INCOMPATIBLE, "rejected", probed=True)


def _resolver(
    tmp_path: Path,
    engine: FakeEngine,
    clock: ManualClock,
    actions: list[MismatchAction],
) -> MismatchResolver:
    config = make_config(tmp_path)
    inspector = VolumeInspector(config, engine)
    validator = ConsistencyValidator(config, engine, inspector, clock=clock, sleep=clock.sleep)
    queue = iter(actions)
    return MismatchResolver(
        config,
        engine,
        inspector,
        validator,
        choose=lambda report: next(queue),
        sleep=clock.sleep,
    )


def test_compatible_report_continues_without_asking(tmp_path: Path, clock: ManualClock) -> None:
    """No choice is requested when nothing is wrong."""
    resolver = _resolver(tmp_path, FakeEngine(), clock, [])
    report = ValidationReport(CompatibilityResult.COMPATIBLE, "ok")

    resolution = resolver.resolve(SecretBundle.generate(), report)

    assert resolution.action is MismatchAction.CONTINUE
    assert resolution.warnings == ()


def test_continue_keeps_data_and_warns(tmp_path: Path, clock: ManualClock) -> None:
    """Continuing never touches volumes."""
    engine = FakeEngine(volumes={"milou_pgdata": 80_000})
    resolver = _resolver(tmp_path, engine, clock, [MismatchAction.CONTINUE])

    resolution = resolver.resolve(SecretBundle.generate(), INCOMPATIBLE)

    assert resolution.action is MismatchAction.CONTINUE
    assert resolution.warnings
    assert engine.calls_named("remove_volumes") == []


def test_retry_is_bounded(tmp_path: Path, clock: ManualClock) -> None:
    """Retries stop after the configured maximum and fall back to continue."""
    engine = FakeEngine(volumes={"milou_pgdata": 80_000}, exec_handler=_handler(REJECTED))
    resolver = _resolver(tmp_path, engine, clock, [MismatchAction.RETRY] * 5)

    resolution = resolver.resolve(SecretBundle.generate(), INCOMPATIBLE)

    assert resolution.action is MismatchAction.CONTINUE
    assert resolution.attempts == 3
    assert clock.sleeps.count(2.0) >= 2
    assert "after 2 retries" in resolution.warnings[0]


def test_retry_succeeds_when_database_recovers(tmp_path: Path, clock: ManualClock) -> None:
    """A retry that finds compatible credentials ends the loop."""
    engine = FakeEngine(volumes={"milou_pgdata": 80_000}, exec_handler=_handler(ExecResult(0, "1")))
    resolver = _resolver(tmp_path, engine, clock, [MismatchAction.RETRY])

    resolution = resolver.resolve(SecretBundle.generate(), INCOMPATIBLE)

    assert resolution.action is MismatchAction.RETRY
    assert resolution.report.result is CompatibilityResult.COMPATIBLE


def test_reset_volume_removes_only_database_volumes(tmp_path: Path, clock: ManualClock) -> None:
    """Resetting stops the stack and removes the database volume."""
    engine = FakeEngine(volumes={"milou_pgdata": 80_000, "milou_redis_data": 50})
    resolver = _resolver(tmp_path, engine, clock, [MismatchAction.RESET_VOLUME])

    resolution = resolver.resolve(SecretBundle.generate(), INCOMPATIBLE)

    assert resolution.removed_volumes == ("milou_pgdata",)
    assert engine.calls_named("down") == [("down", False)]
    assert "milou_redis_data" in engine.volumes


def test_full_clean_removes_every_data_volume(tmp_path: Path, clock: ManualClock) -> None:
    """A full clean removes all data volumes."""
    engine = FakeEngine(volumes={"milou_pgdata": 80_000, "milou_redis_data": 50})
    resolver = _resolver(tmp_path, engine, clock, [MismatchAction.FULL_CLEAN])

    resolution = resolver.resolve(SecretBundle.generate(), INCOMPATIBLE)

    assert set(resolution.removed_volumes) == {"milou_pgdata", "milou_redis_data"}
    assert engine.volumes == {}


def test_abort_raises_conflict(tmp_path: Path, clock: ManualClock) -> None:
    """Aborting surfaces a conflict with a remediation."""
    resolver = _resolver(tmp_path, FakeEngine(), clock, [MismatchAction.ABORT])

    with pytest.raises(ConflictError) as excinfo:
        resolver.resolve(SecretBundle.generate(), INCOMPATIBLE)

    assert "rollback" in (excinfo.value.remediation or "")
