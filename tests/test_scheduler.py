"""
Tests du scheduler de l'agent
"""

from concurrent.futures import Future

import pytest

from conftest import ImmediateExecutor
from uem_agent.core.scheduler import AgentScheduler


class PendingExecutor:
    """Pool dont les tâches ne se terminent jamais"""

    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args, **kwargs):
        self.submitted.append(fn)
        return Future()


class TestAgentScheduler:

    def test_rejects_non_positive_interval(self, agent_logger):
        scheduler = AgentScheduler(agent_logger, ImmediateExecutor())

        with pytest.raises(ValueError):
            scheduler.add_interval_job('policy', 0, lambda: None)

    def test_run_now_executes_job(self, agent_logger):
        calls = []
        scheduler = AgentScheduler(agent_logger, ImmediateExecutor())
        scheduler.add_interval_job('heartbeat', 30, lambda: calls.append('beat'))

        assert scheduler.run_now('heartbeat') is True

        assert calls == ['beat']
        assert scheduler.get_status()['jobs']['heartbeat']['run_count'] == 1

    def test_unknown_job(self, agent_logger):
        assert AgentScheduler(agent_logger, ImmediateExecutor()).run_now('nope') is False

    def test_job_error_does_not_propagate(self, agent_logger):
        scheduler = AgentScheduler(agent_logger, ImmediateExecutor())

        def broken():
            raise RuntimeError("down")

        scheduler.add_interval_job('policy', 30, broken)
        assert scheduler.run_now('policy') is True
        assert scheduler.get_status()['jobs']['policy']['run_count'] == 1

    def test_overlapping_trigger_is_skipped(self, agent_logger):
        executor = PendingExecutor()
        scheduler = AgentScheduler(agent_logger, executor)
        scheduler.add_interval_job('discovery', 3600, lambda: None)

        scheduler.scheduler.run_all()
        scheduler.scheduler.run_all()

        assert len(executor.submitted) == 1
        status = scheduler.get_status()['jobs']['discovery']
        assert status['running'] is True
        assert status['skipped_count'] == 1
        assert scheduler.run_now('discovery') is False

    def test_start_and_stop(self, agent_logger):
        scheduler = AgentScheduler(agent_logger, ImmediateExecutor(), tick_seconds=0.05)
        scheduler.add_interval_job('policy', 30, lambda: None)

        scheduler.start()
        assert scheduler.get_status()['is_running'] is True
        scheduler.stop()

        assert scheduler.get_status()['is_running'] is False
        assert not scheduler.scheduler_thread.is_alive()
