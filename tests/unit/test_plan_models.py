"""Tests for the task plan models."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from phaselauncher.plan import Phase, Status, Step, TaskPlan, step_label, step_sort_key


class TestStatus:
    @pytest.mark.parametrize(
        ("current", "target", "allowed"),
        [
            (Status.TODO, Status.TODO, True),
            (Status.TODO, Status.IN_PROGRESS, True),
            (Status.TODO, Status.DONE, True),
            (Status.IN_PROGRESS, Status.DONE, True),
            (Status.IN_PROGRESS, Status.TODO, False),
            (Status.DONE, Status.IN_PROGRESS, False),
            (Status.DONE, Status.TODO, False),
            (Status.DONE, Status.DONE, True),
        ],
    )
    def test_transitions_only_move_forward(
        self, current: Status, target: Status, allowed: bool
    ) -> None:
        assert current.can_transition_to(target) is allowed


class TestStepIds:
    def test_step_label_sequence(self) -> None:
        assert [step_label(3, i) for i in range(3)] == ["3A", "3B", "3C"]
        assert step_label(3, 25) == "3Z"
        assert step_label(3, 26) == "3AA"
        assert step_label(12, 27) == "12AB"

    def test_natural_sort(self) -> None:
        ids = ["2A", "1AA", "1B", "10A", "1A", "1Z"]
        assert sorted(ids, key=step_sort_key) == ["1A", "1B", "1Z", "1AA", "2A", "10A"]

    def test_sort_key_accepts_irregular_ids(self) -> None:
        assert step_sort_key("fix") == (0, 3, "FIX", "")
        assert step_sort_key("") == (0, 0, "", "")
        assert step_sort_key("3-b") < step_sort_key("3A")

    def test_ordered_steps_uses_natural_order(self) -> None:
        phase = Phase(
            id=1,
            name="p",
            steps=[Step(id="1AA", name="c"), Step(id="1B", name="b"), Step(id="1A", name="a")],
        )
        assert [s.id for s in phase.ordered_steps()] == ["1A", "1B", "1AA"]


class TestPhase:
    def test_all_steps_done(self) -> None:
        phase = Phase(id=1, name="p", steps=[Step(id="1A", name="a", status=Status.DONE)])
        assert phase.all_steps_done
        phase.steps.append(Step(id="1B", name="b"))
        assert not phase.all_steps_done

    def test_step_counts(self) -> None:
        phase = Phase(
            id=1,
            name="p",
            steps=[
                Step(id="1A", name="a", status=Status.DONE),
                Step(id="1B", name="b", status=Status.IN_PROGRESS),
                Step(id="1C", name="c"),
                Step(id="1D", name="d"),
            ],
        )
        assert phase.step_counts() == {Status.TODO: 2, Status.IN_PROGRESS: 1, Status.DONE: 1}

    def test_unset_bookkeeping_not_serialized(self) -> None:
        data = Phase(id=1, name="p").model_dump(mode="json")
        assert "remediation_of" not in data
        assert "validating_since" not in data
        assert "halted_reason" not in data

    def test_set_bookkeeping_serialized(self) -> None:
        since = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        data = Phase(id=2, name="p", remediation_of=1, validating_since=since).model_dump(
            mode="json"
        )
        assert data["remediation_of"] == 1
        assert data["validating_since"].startswith("2024-05-01T12:00:00")

    def test_status_is_validated_on_assignment(self) -> None:
        step = Step(id="1A", name="a")
        step.status = "DONE"  # type: ignore[assignment]
        assert step.status is Status.DONE
        with pytest.raises(ValueError):
            step.status = "FINISHED"  # type: ignore[assignment]


class TestTaskPlan:
    def test_unknown_keys_survive_round_trip(self) -> None:
        raw = {
            "project": "demo",
            "phases": [
                {
                    "id": 1,
                    "name": "Setup",
                    "owner": "agent-7",
                    "steps": [{"id": "1A", "name": "a", "estimate": 3}],
                }
            ],
        }
        dumped = TaskPlan.model_validate(raw).to_document()
        assert dumped["project"] == "demo"
        assert dumped["phases"][0]["owner"] == "agent-7"
        assert dumped["phases"][0]["steps"][0]["estimate"] == 3

    def test_next_phase_id_is_max_plus_one(self) -> None:
        plan = TaskPlan(phases=[Phase(id=1, name="a"), Phase(id=7, name="b"), Phase(id=3, name="c")])
        assert plan.next_phase_id() == 8
        assert TaskPlan().next_phase_id() == 1

    def test_open_remediation_of(self) -> None:
        plan = TaskPlan(
            phases=[
                Phase(id=1, name="a"),
                Phase(id=2, name="fix a", remediation_of=1, status=Status.DONE),
                Phase(id=3, name="fix a again", remediation_of=1),
            ]
        )
        remediation = plan.open_remediation_of(1)
        assert remediation is not None
        assert remediation.id == 3
        assert plan.open_remediation_of(3) is None

    def test_remediation_depth_follows_chain(self) -> None:
        plan = TaskPlan(
            phases=[
                Phase(id=1, name="a"),
                Phase(id=2, name="b", remediation_of=1),
                Phase(id=3, name="c", remediation_of=2),
            ]
        )
        assert plan.remediation_depth(plan.phases[0]) == 0
        assert plan.remediation_depth(plan.phases[2]) == 2

    def test_remediation_root_walks_to_original(self) -> None:
        plan = TaskPlan(
            phases=[
                Phase(id=1, name="a"),
                Phase(id=2, name="b", remediation_of=1),
                Phase(id=3, name="c", remediation_of=2),
            ]
        )
        assert plan.remediation_root(plan.phases[2]).id == 1
        assert plan.remediation_root(plan.phases[0]).id == 1

    def test_remediation_depth_stops_on_cycle(self) -> None:
        plan = TaskPlan(
            phases=[Phase(id=1, name="a", remediation_of=2), Phase(id=2, name="b", remediation_of=1)]
        )
        assert plan.remediation_depth(plan.phases[0]) == 1
