"""Tests for Celery tasks."""

import logging
from unittest.mock import MagicMock, patch

import pytest

from wgmanager.services.errors import InternalError


class TestSyncPeerStatsTask:
    def test_success(self):
        mock_session = MagicMock()

        with patch("wgmanager.tasks.wireguard.SessionLocal", return_value=mock_session):
            with patch(
                "wgmanager.tasks.wireguard.wireguard_status.sync_peer_stats", return_value=3
            ) as mock_sync:
                from wgmanager.tasks.wireguard import sync_peer_stats

                assert sync_peer_stats() == {"peers_updated": 3}

                mock_sync.assert_called_once_with(mock_session)
                mock_session.close.assert_called_once()

    def test_exception_rollback(self):
        mock_session = MagicMock()

        with patch("wgmanager.tasks.wireguard.SessionLocal", return_value=mock_session):
            with patch(
                "wgmanager.tasks.wireguard.wireguard_status.sync_peer_stats",
                side_effect=Exception("db gone"),
            ):
                from wgmanager.tasks.wireguard import sync_peer_stats

                with pytest.raises(Exception, match="db gone"):
                    sync_peer_stats()

                mock_session.rollback.assert_called_once()
                mock_session.close.assert_called_once()


class TestRestartAllInterfacesTask:
    def test_success(self):
        mock_session = MagicMock()

        with patch("wgmanager.tasks.wireguard.SessionLocal", return_value=mock_session):
            with patch(
                "wgmanager.tasks.wireguard.wireguard_deploy.restart_all",
                return_value=["wg0"],
            ):
                from wgmanager.tasks.wireguard import restart_all_interfaces

                assert restart_all_interfaces() == {"restarted": ["wg0"], "errors": None}
                mock_session.close.assert_called_once()

    def test_errors_are_reported(self):
        mock_session = MagicMock()

        with patch("wgmanager.tasks.wireguard.SessionLocal", return_value=mock_session):
            with patch(
                "wgmanager.tasks.wireguard.wireguard_deploy.restart_all",
                side_effect=InternalError("restart finished with errors: wg1: boom"),
            ):
                from wgmanager.tasks.wireguard import restart_all_interfaces

                result = restart_all_interfaces()

                assert result["restarted"] == []
                assert "wg1: boom" in result["errors"]
                mock_session.close.assert_called_once()


class TestBeatSchedule:
    def test_peer_stats_schedule(self):
        from wgmanager.celery_app import build_beat_schedule

        schedule = build_beat_schedule()
        entry = schedule["wireguard_sync_peer_stats"]
        assert entry["task"] == "wgmanager.tasks.wireguard.sync_peer_stats"
        assert entry["schedule"].total_seconds() >= 5


class TestJsonFormatter:
    def test_extra_fields_are_included(self):
        import json

        from wgmanager.logging import JsonFormatter

        record = logging.LogRecord(
            "wgmanager.test", logging.INFO, __file__, 1, "wg_apply_ok interface=%s", ("wg0",), None
        )
        record.interface = "wg0"
        payload = json.loads(JsonFormatter().format(record))
        assert payload["message"] == "wg_apply_ok interface=wg0"
        assert payload["level"] == "INFO"
        assert payload["interface"] == "wg0"
