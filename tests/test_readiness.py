from __future__ import annotations

import allure

from mise_loop.orchestrator.models import RequiredInputs, Task
from mise_loop.orchestrator.readiness import check_task, gate

pytestmark = [
    allure.epic("Execution Loop"),
    allure.feature("Readiness Gate"),
]


def test_missing_env_vars_block_the_task() -> None:
    task = Task(
        id="a",
        title="A",
        required_inputs=RequiredInputs(env_vars=["API_KEY", "REGION"], services=["postgres"]),
    )

    result = check_task(task, {"REGION": "eu", "API_KEY": ""})

    assert not result.ready
    assert result.missing == ["env:API_KEY"]
    assert result.notices == ["service:postgres"]


def test_services_credentials_and_migrations_never_block() -> None:
    task = Task(
        id="a",
        title="A",
        required_inputs=RequiredInputs(
            services=["redis"],
            credentials=["deploy-key"],
            migrations=["0003_add_index"],
        ),
    )

    result = check_task(task, {})

    assert result.ready
    assert result.notices == ["service:redis", "credential:deploy-key", "migration:0003_add_index"]


def test_gate_splits_ready_and_blocked_in_order() -> None:
    tasks = [
        Task(id="a", title="A", required_inputs=RequiredInputs(env_vars=["TOKEN"])),
        Task(id="b", title="B"),
        Task(id="c", title="C"),
    ]

    ready, blocked = gate(tasks, {})

    assert [task.id for task in ready] == ["b", "c"]
    assert [(task.id, result.missing) for task, result in blocked] == [("a", ["env:TOKEN"])]
