"""Tests for the bounded transaction retry helper and its error classifiers."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from wgmanager.services.retry import (
    is_serialization_failure,
    is_transient_conflict,
    is_unique_violation,
    run_in_transaction,
)


class _DriverError(Exception):
    def __init__(self, message, sqlstate=None):
        super().__init__(message)
        if sqlstate:
            self.sqlstate = sqlstate


def _integrity(message, sqlstate=None):
    return IntegrityError("INSERT INTO wireguard_peers", {}, _DriverError(message, sqlstate))


def _operational(message, sqlstate=None):
    return OperationalError("INSERT INTO wireguard_peers", {}, _DriverError(message, sqlstate))


class TestClassifiers:
    def test_sqlite_unique(self):
        exc = _integrity("UNIQUE constraint failed: wireguard_peers.interface_id, wireguard_peers.ip")
        assert is_unique_violation(exc) is True

    def test_mysql_duplicate_entry(self):
        exc = _integrity("(1062, \"Duplicate entry '1-10.8.0.2' for key 'uq'\")")
        assert is_unique_violation(exc) is True

    def test_postgres_sqlstate(self):
        exc = _integrity("conflict", sqlstate="23505")
        assert is_unique_violation(exc) is True

    def test_postgres_message(self):
        exc = _integrity('duplicate key value violates unique constraint "uq_wireguard_peers_interface_ip"')
        assert is_unique_violation(exc) is True

    def test_not_null_is_not_unique(self):
        exc = _integrity("NOT NULL constraint failed: wireguard_peers.ip")
        assert is_unique_violation(exc) is False

    def test_plain_exception_is_not_unique(self):
        assert is_unique_violation(ValueError("unique constraint failed")) is False

    def test_postgres_serialization_failure(self):
        exc = _operational("could not serialize access due to concurrent update", "40001")
        assert is_serialization_failure(exc) is True

    def test_sqlite_locked(self):
        assert is_serialization_failure(_operational("database is locked")) is True

    def test_mysql_deadlock(self):
        exc = _operational("(1213, 'Deadlock found when trying to get lock')")
        assert is_serialization_failure(exc) is True

    def test_other_operational_error(self):
        assert is_serialization_failure(_operational("no such table: wireguard_peers")) is False

    def test_transient_conflict_covers_both(self):
        assert is_transient_conflict(_integrity("UNIQUE constraint failed: x")) is True
        assert is_transient_conflict(_operational("database is locked")) is True
        assert is_transient_conflict(RuntimeError("boom")) is False


class TestRunInTransaction:
    def _factory(self):
        sessions = []

        def factory():
            session = MagicMock()
            sessions.append(session)
            return session

        return factory, sessions

    def test_commits_on_success(self):
        factory, sessions = self._factory()
        result = run_in_transaction(
            factory, lambda s: "ok", max_attempts=3, is_retryable=is_unique_violation
        )
        assert result == "ok"
        assert len(sessions) == 1
        sessions[0].commit.assert_called_once()
        sessions[0].close.assert_called_once()

    def test_fresh_session_per_attempt(self):
        factory, sessions = self._factory()
        attempts = []

        def unit(session):
            attempts.append(session)
            if len(attempts) < 3:
                raise _integrity("UNIQUE constraint failed: wireguard_peers.ip")
            return 42

        on_retry = MagicMock()
        result = run_in_transaction(
            factory,
            unit,
            max_attempts=5,
            is_retryable=is_unique_violation,
            on_retry=on_retry,
        )
        assert result == 42
        assert len(sessions) == 3
        assert len(set(map(id, attempts))) == 3
        sessions[0].rollback.assert_called_once()
        sessions[1].rollback.assert_called_once()
        sessions[2].commit.assert_called_once()
        assert [call.args[0] for call in on_retry.call_args_list] == [1, 2]
        for session in sessions:
            session.close.assert_called_once()

    def test_non_retryable_error_propagates_immediately(self):
        factory, sessions = self._factory()

        def unit(session):
            raise _integrity("NOT NULL constraint failed: wireguard_peers.ip")

        with pytest.raises(IntegrityError):
            run_in_transaction(factory, unit, max_attempts=5, is_retryable=is_unique_violation)
        assert len(sessions) == 1
        sessions[0].rollback.assert_called_once()
        sessions[0].commit.assert_not_called()

    def test_exhaustion_reraises_last_error(self):
        factory, sessions = self._factory()
        errors = [_integrity(f"UNIQUE constraint failed: attempt {i}") for i in range(3)]

        def unit(session):
            raise errors[len(sessions) - 1]

        with pytest.raises(IntegrityError) as exc_info:
            run_in_transaction(factory, unit, max_attempts=3, is_retryable=is_unique_violation)
        assert exc_info.value is errors[-1]
        assert len(sessions) == 3

    def test_isolation_level_applied_before_work(self):
        factory, sessions = self._factory()
        run_in_transaction(
            factory,
            lambda s: None,
            max_attempts=1,
            is_retryable=is_unique_violation,
            isolation_level="SERIALIZABLE",
        )
        sessions[0].connection.assert_called_once_with(
            execution_options={"isolation_level": "SERIALIZABLE"}
        )

    def test_invalid_max_attempts(self):
        factory, _ = self._factory()
        with pytest.raises(ValueError):
            run_in_transaction(factory, lambda s: None, max_attempts=0, is_retryable=bool)
