from typing import Optional

import pytest

from stepwise.config import RetryConfig, StepwiseConfig, WorkerConfig
from stepwise.events import ALL_EVENTS, EventBus
from stepwise.executor import WorkflowExecutor
from stepwise.persistence import ExecutionRepository, InMemoryExecutionRepository
from stepwise.queue import WorkflowQueue
from stepwise.steps import OperationRegistry, StepExecutor, default_registry
from stepwise.transports.inmemory import InMemoryTransport


class Harness:
    """Executor wired to in-memory backends with a frozen transport clock."""

    def __init__(
        self,
        registry: OperationRegistry,
        repository: Optional[ExecutionRepository] = None,
        poll_interval: float = 0.001,
    ) -> None:
        self.transport = InMemoryTransport(clock=lambda: 0.0, poll_interval=poll_interval)
        self.repository = repository or InMemoryExecutionRepository()
        self.queue = WorkflowQueue(self.transport)
        self.registry = registry
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe(ALL_EVENTS, self.events.append)
        config = StepwiseConfig(
            worker=WorkerConfig(poll_interval=poll_interval),
            retry=RetryConfig(max_retries=3, backoff_base=2.0),
        )
        self.executor = WorkflowExecutor(
            self.repository,
            self.queue,
            event_bus=self.bus,
            step_executor=StepExecutor(registry, self.bus),
            config=config,
        )

    def event_types(self, prefix: str = "workflow."):
        return [e.type for e in self.events if e.type.startswith(prefix)]


@pytest.fixture
def registry():
    return default_registry(max_delay_seconds=0)


@pytest.fixture
def make_harness(registry):
    def factory(repository: Optional[ExecutionRepository] = None) -> Harness:
        return Harness(registry, repository)

    return factory


@pytest.fixture
def harness(make_harness):
    return make_harness()
