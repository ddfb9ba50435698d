from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest import mock

import support

from sqlalchemy import func, select

from core.db import as_utc, session_scope, utcnow
from core.models import (
    RUN_STATUS_CANCELLED,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    RUN_STATUS_PENDING,
    RUN_STATUS_RUNNING,
    Run,
    RunTask,
    Schedule,
    UsageRecord,
)
from services import agents, llm_client, runner, runs, schedules, tasks, teams


class RunnerTests(support.DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.create_principal("runner@example.com")
        patcher = mock.patch("services.runner.emit_run_updated")
        self.emit = patcher.start()
        self.addCleanup(patcher.stop)

    def _run_with_team(self, agent_names, *, aggregation="last", topology="pipeline") -> int:
        with session_scope() as session:
            team = teams.create_team(
                session,
                {
                    "name": "Crew",
                    "aggregation_strategy": aggregation,
                    "user_id": self.user.user_id,
                },
            )
            for name in agent_names:
                agent = agents.create_agent(
                    session, {"name": name, "user_id": self.user.user_id}
                )
                teams.add_member(session, team.id, agent.id, self.user.user_id)
            return runs.create_run(
                session,
                {
                    "name": "Job",
                    "prompt": "Write a haiku",
                    "topology": topology,
                    "team_id": team.id,
                    "user_id": self.user.user_id,
                },
            ).id

    def test_pipeline_hands_each_output_to_the_next_stage(self) -> None:
        run_id = self._run_with_team(["Drafter", "Editor"])
        seen: list[list[dict[str, str]]] = []

        def executor(agent, messages):
            seen.append(messages)
            return llm_client.ChatResult(
                content=f"{agent.name} output", input_tokens=10, output_tokens=5
            )

        status = runner.execute(run_id, self.user.user_id, executor=executor)

        self.assertEqual(RUN_STATUS_COMPLETED, status)
        self.assertEqual(2, len(seen))
        self.assertNotIn("previous stage", seen[0][1]["content"])
        self.assertIn("Drafter output", seen[1][1]["content"])
        self.assertIn("Your role on this team: worker.", seen[0][0]["content"])
        with session_scope() as session:
            run = session.get(Run, run_id)
            self.assertEqual(RUN_STATUS_COMPLETED, run.status)
            self.assertEqual({"output": "Editor output", "stages": 2}, run.deliverables)
            self.assertIsNotNone(run.completed_at)
            usage_rows = session.execute(
                select(func.count(UsageRecord.id)).where(UsageRecord.run_id == run_id)
            ).scalar_one()
            self.assertEqual(2, usage_rows)
        self.assertTrue(self.emit.called)

    def test_merge_aggregation_joins_outputs(self) -> None:
        run_id = self._run_with_team(["A", "B"], aggregation="merge", topology="parallel")

        def executor(agent, messages):
            return llm_client.ChatResult(content=agent.name)

        runner.execute(run_id, self.user.user_id, executor=executor)
        with session_scope() as session:
            self.assertEqual("A\n\nB", session.get(Run, run_id).deliverables["output"])

    def test_cancel_between_stages_stops_the_run(self) -> None:
        run_id = self._run_with_team(["First", "Second", "Third"])
        calls: list[str] = []

        def executor(agent, messages):
            calls.append(agent.name)
            with session_scope() as session:
                runs.request_cancel(session, run_id, self.user.user_id)
            return llm_client.ChatResult(content="partial")

        status = runner.execute(run_id, self.user.user_id, executor=executor)

        self.assertEqual(RUN_STATUS_CANCELLED, status)
        self.assertEqual(["First"], calls)
        with session_scope() as session:
            self.assertEqual(RUN_STATUS_CANCELLED, session.get(Run, run_id).status)
            task_count = session.execute(
                select(func.count(RunTask.id)).where(RunTask.run_id == run_id)
            ).scalar_one()
            self.assertEqual(1, task_count)

    def test_stage_failure_fails_the_run(self) -> None:
        run_id = self._run_with_team(["Broken"])

        def executor(agent, messages):
            raise llm_client.LLMClientError("provider unavailable")

        status = runner.execute(run_id, self.user.user_id, executor=executor)

        self.assertEqual(RUN_STATUS_FAILED, status)
        with session_scope() as session:
            self.assertEqual("provider unavailable", session.get(Run, run_id).error)

    def test_run_without_members_fails(self) -> None:
        with session_scope() as session:
            run_id = runs.create_run(
                session, {"name": "Alone", "prompt": "hi", "user_id": self.user.user_id}
            ).id
        status = runner.execute(run_id, self.user.user_id, executor=mock.Mock())
        self.assertEqual(RUN_STATUS_FAILED, status)
        with session_scope() as session:
            self.assertEqual("Run has no team members", session.get(Run, run_id).error)

    def test_only_pending_runs_execute(self) -> None:
        run_id = self._run_with_team(["Solo"])
        with session_scope() as session:
            session.get(Run, run_id).status = RUN_STATUS_COMPLETED
        executor = mock.Mock()
        self.assertIsNone(runner.execute(run_id, self.user.user_id, executor=executor))
        executor.assert_not_called()

    def test_a_run_is_claimed_by_one_execution_only(self) -> None:
        run_id = self._run_with_team(["Solo"])
        first = runner._mark_running(run_id)
        self.assertIsNotNone(first)
        self.assertIsNone(runner._mark_running(run_id))
        with session_scope() as session:
            run = session.get(Run, run_id)
            self.assertEqual(RUN_STATUS_RUNNING, run.status)
            self.assertIsNotNone(run.started_at)

    def test_cancel_requested_run_is_not_claimed(self) -> None:
        run_id = self._run_with_team(["Solo"])
        with session_scope() as session:
            session.get(Run, run_id).cancel_requested = True
        self.assertIsNone(runner._mark_running(run_id))
        with session_scope() as session:
            self.assertEqual(RUN_STATUS_PENDING, session.get(Run, run_id).status)

    def test_aggregate_outputs(self) -> None:
        self.assertEqual("", runner.aggregate_outputs([], "merge"))
        self.assertEqual("b", runner.aggregate_outputs(["a", "b"], "last"))
        self.assertEqual("a\n\nb", runner.aggregate_outputs(["a", "b"], "merge"))
        self.assertEqual("yes", runner.aggregate_outputs(["yes", "no", "yes"], "vote"))


class CronTests(unittest.TestCase):
    def test_cron_fields_accepts_five_or_six(self) -> None:
        self.assertEqual(["0", "9", "*", "*", "*"], schedules.cron_fields("0 9 * * *"))
        self.assertEqual(["0", "9", "*", "*", "*"], schedules.cron_fields("15 0 9 * * *"))
        self.assertIsNone(schedules.cron_fields("* * * *"))
        self.assertIsNone(schedules.cron_fields("* * * * * * *"))

    def test_validate_cron_messages(self) -> None:
        self.assertIsNone(schedules.validate_cron("*/5 * * * *"))
        self.assertEqual(schedules.CRON_FIELD_MESSAGE, schedules.validate_cron(""))
        self.assertEqual("is invalid", schedules.validate_cron("61 * * * *"))

    def test_next_run_is_evaluated_in_the_schedule_timezone(self) -> None:
        now = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
        next_run = schedules.compute_next_run("0 9 * * *", "America/New_York", now=now)
        self.assertEqual(datetime(2026, 1, 15, 14, 0, tzinfo=timezone.utc), next_run)

    def test_next_run_in_utc(self) -> None:
        now = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)
        expected = datetime(2026, 1, 15, 10, 30, tzinfo=timezone.utc)
        self.assertEqual(expected, schedules.compute_next_run("30 * * * *", "UTC", now=now))
        self.assertEqual(expected, schedules.compute_next_run("0 30 * * * *", "UTC", now=now))


class ScheduleTickTests(support.DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.create_principal("cron@example.com")

    def _create_schedule(self, **overrides) -> int:
        attrs = {
            "name": "Hourly",
            "prompt": "Check in",
            "cron_expression": "0 * * * *",
            "user_id": self.user.user_id,
        }
        attrs.update(overrides)
        with session_scope() as session:
            return schedules.create_schedule(session, attrs).id

    def test_tick_fires_due_schedules_and_advances_them(self) -> None:
        schedule_id = self._create_schedule()
        idle_id = self._create_schedule(name="Later")
        past = utcnow() - timedelta(minutes=5)
        with session_scope() as session:
            session.get(Schedule, schedule_id).next_run_at = past

        with mock.patch(
            "services.tasks.execute_run.delay", return_value=SimpleNamespace(id="task-9")
        ) as delay:
            result = tasks.tick_schedules()

        self.assertEqual({"fired": 1}, result)
        self.assertEqual(1, delay.call_count)
        with session_scope() as session:
            fired = session.execute(select(Run)).scalars().all()
            self.assertEqual(1, len(fired))
            self.assertEqual({"schedule_id": schedule_id}, fired[0].context)
            self.assertEqual("task-9", fired[0].task_id)
            schedule = session.get(Schedule, schedule_id)
            self.assertIsNotNone(schedule.last_run_at)
            self.assertGreater(as_utc(schedule.next_run_at), past)
            self.assertIsNone(session.get(Schedule, idle_id).last_run_at)

    def test_disabled_schedule_is_not_due(self) -> None:
        schedule_id = self._create_schedule()
        with session_scope() as session:
            schedule = schedules.toggle_schedule(session, schedule_id, self.user.user_id)
            self.assertFalse(schedule.enabled)
            self.assertIsNone(schedule.next_run_at)
            self.assertEqual([], schedules.list_due_schedules(session))

    def test_invalid_timezone_is_rejected(self) -> None:
        from services.errors import ValidationFailed

        with self.assertRaises(ValidationFailed) as caught:
            self._create_schedule(timezone="Mars/Olympus")
        self.assertEqual("timezone: is invalid", caught.exception.format())


if __name__ == "__main__":
    unittest.main()
