"""
Unit tests for scheduler (sourdough/scheduler.py).

Tests APScheduler configuration, backup schedule sync and the job entry points.
"""

import logging
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from sourdough import scheduler as scheduler_module
from sourdough.backup import BackupService, load_backup_config
from sourdough.backup.config import ScheduleConfig, get_settings_store


JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)  # a Monday


def next_fire(trigger, now=JAN_1):
    return trigger.get_next_fire_time(None, now)


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def test_init_scheduler(self, app, mock_scheduler):
        """Test scheduler initialization."""
        result = scheduler_module.init_scheduler(app)

        assert result is mock_scheduler
        assert scheduler_module.scheduler is mock_scheduler
        assert scheduler_module.flask_app is app

        # Retention sweep is always registered
        call_kwargs = mock_scheduler.add_job.call_args.kwargs
        assert call_kwargs['id'] == scheduler_module.RETENTION_JOB_ID
        assert call_kwargs['func'] is scheduler_module.run_retention_cleanup

    def test_init_scheduler_only_once(self, app, mock_scheduler):
        """Test scheduler is only initialized once."""
        result1 = scheduler_module.init_scheduler(app)
        result2 = scheduler_module.init_scheduler(app)

        assert result1 is result2
        assert mock_scheduler.add_job.call_count == 1


class TestSchedulerLifecycle:
    """Test scheduler start/stop operations."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.running = False
        self.mock_scheduler.state = 0
        self.mock_scheduler.get_jobs.return_value = []
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_start_scheduler(self):
        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_called_once()

    def test_start_scheduler_not_initialized(self):
        """Test starting scheduler before initialization raises error."""
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.start_scheduler()

    def test_start_scheduler_already_running(self):
        self.mock_scheduler.running = True

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_not_called()

    def test_stop_scheduler(self):
        self.mock_scheduler.running = True

        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_called_once()

    def test_stop_scheduler_not_running(self):
        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_not_called()


class TestBackupTrigger:
    """Test translating schedule settings into cron triggers."""

    def test_daily(self):
        trigger = scheduler_module.build_backup_trigger(ScheduleConfig(frequency='daily', time='03:30'))

        assert next_fire(trigger) == datetime(2024, 1, 1, 3, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("day_of_week,expected_day", [
        (0, 7),   # Sunday
        (1, 1),   # Monday
        (3, 3),   # Wednesday
        (6, 6),   # Saturday
    ])
    def test_weekly_counts_from_sunday(self, day_of_week, expected_day):
        schedule = ScheduleConfig(frequency='weekly', time='02:00', day_of_week=day_of_week)

        trigger = scheduler_module.build_backup_trigger(schedule)

        assert next_fire(trigger) == datetime(2024, 1, expected_day, 2, 0, tzinfo=timezone.utc)

    def test_monthly(self):
        schedule = ScheduleConfig(frequency='monthly', time='01:15', day_of_month=15)

        trigger = scheduler_module.build_backup_trigger(schedule)

        assert next_fire(trigger) == datetime(2024, 1, 15, 1, 15, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ['25:00', 'noon', '7'])
    def test_invalid_time_falls_back(self, value):
        trigger = scheduler_module.build_backup_trigger(ScheduleConfig(time=value))

        assert next_fire(trigger) == datetime(2024, 1, 1, 2, 0, tzinfo=timezone.utc)


class TestSyncBackupSchedule:
    """Test syncing the backup job with stored settings."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.get_job.return_value = None
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_sync_not_initialized(self):
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.sync_backup_schedule()

    def test_enabled_schedule_adds_job(self, app, db):
        scheduler_module.flask_app = app
        store = get_settings_store(app)
        store.set('backup', 'schedule_enabled', True)
        store.set('backup', 'schedule_frequency', 'weekly')
        store.set('backup', 'schedule_day', 0)

        trigger = scheduler_module.sync_backup_schedule()

        call_kwargs = self.mock_scheduler.add_job.call_args.kwargs
        assert call_kwargs['id'] == scheduler_module.BACKUP_JOB_ID
        assert call_kwargs['func'] is scheduler_module.run_scheduled_backup
        assert call_kwargs['replace_existing'] is True
        assert call_kwargs['trigger'] is trigger
        assert next_fire(trigger).weekday() == 6

    def test_disabled_schedule_removes_job(self, app, db):
        scheduler_module.flask_app = app
        self.mock_scheduler.get_job.return_value = MagicMock()

        assert scheduler_module.sync_backup_schedule() is None

        self.mock_scheduler.remove_job.assert_called_once_with(scheduler_module.BACKUP_JOB_ID)
        self.mock_scheduler.add_job.assert_not_called()

    def test_disabled_schedule_without_job(self, app, db):
        scheduler_module.flask_app = app

        scheduler_module.sync_backup_schedule()

        self.mock_scheduler.remove_job.assert_not_called()


class TestJobEntryPoints:
    """Test the functions APScheduler runs."""

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.flask_app = None

    def test_run_scheduled_backup(self, app, db, admin_user):
        scheduler_module.flask_app = app

        result = scheduler_module.run_scheduled_backup()

        assert result['filename'].startswith('sourdough-backup-')
        assert result['manifest']['contents'] == {'database': True, 'files': True, 'settings': True}

    def test_run_scheduled_backup_logs_errors(self, app, db, caplog):
        """Test a failing scheduled backup is logged and not raised."""
        scheduler_module.flask_app = app

        with BackupService(load_backup_config(app))._lock.hold('restore'):
            with caplog.at_level(logging.ERROR, logger='sourdough.scheduler'):
                result = scheduler_module.run_scheduled_backup()

        assert result is None
        assert 'Scheduled backup failed (operation_in_progress)' in caplog.text

    def test_run_retention_cleanup(self, app, db):
        scheduler_module.flask_app = app

        summary = scheduler_module.run_retention_cleanup()

        assert summary['policy']['enabled'] is False
        assert summary['results'] == []


class TestSchedulerQueries:
    """Test scheduler query functions."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None

    def test_get_scheduled_jobs(self):
        """Test getting list of scheduled jobs."""
        mock_job1 = MagicMock()
        mock_job1.id = scheduler_module.BACKUP_JOB_ID
        mock_job1.name = 'Scheduled backup (daily at 02:00)'
        mock_job1.next_run_time = datetime(2024, 1, 1, 2, 0, 0)
        mock_job1.trigger = 'cron'

        mock_job2 = MagicMock()
        mock_job2.id = scheduler_module.RETENTION_JOB_ID
        mock_job2.name = 'Daily Retention Cleanup'
        mock_job2.next_run_time = None
        mock_job2.trigger = 'cron'

        self.mock_scheduler.get_jobs.return_value = [mock_job1, mock_job2]

        result = scheduler_module.get_scheduled_jobs()

        assert len(result) == 2
        assert result[0]['id'] == 'scheduled_backup'
        assert result[0]['next_run'] == '2024-01-01T02:00:00'
        assert result[1]['next_run'] is None

    def test_get_scheduled_jobs_not_initialized(self):
        scheduler_module.scheduler = None

        assert scheduler_module.get_scheduled_jobs() == []
