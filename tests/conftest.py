from __future__ import annotations

import logging
from concurrent.futures import Future
from types import SimpleNamespace

import pytest

MIN_ISR = "min.insync.replicas"


def done(value=None, error=None) -> Future:
    future = Future()
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(value)
    return future


class FakeAdminClient:
    """In-memory stand-in for confluent_kafka.admin.AdminClient."""

    def __init__(
        self,
        topics: dict,
        internal: dict | None = None,
        replication_factor: int = 3,
        missing_key: tuple = (),
        list_error: Exception | None = None,
        describe_error: Exception | None = None,
        alter_errors: dict | None = None,
    ):
        self.configs = {name: str(value) for name, value in topics.items()}
        self.internal = {name: str(value) for name, value in (internal or {}).items()}
        self.replication_factor = replication_factor
        self.missing_key = set(missing_key)
        self.list_error = list_error
        self.describe_error = describe_error
        self.alter_errors = alter_errors or {}
        self.calls = []
        self.altered = []

    def _all(self) -> dict:
        return {**self.configs, **self.internal}

    def list_topics(self, timeout=-1):
        self.calls.append("list_topics")
        if self.list_error is not None:
            raise self.list_error
        return SimpleNamespace(topics={name: SimpleNamespace(topic=name) for name in self._all()})

    def describe_topics(self, topics, request_timeout=None):
        self.calls.append("describe_topics")
        partitions = [SimpleNamespace(id=0, replicas=list(range(self.replication_factor)))]
        return {
            name: done(SimpleNamespace(name=name, is_internal=name in self.internal, partitions=partitions))
            for name in topics.topic_names
        }

    def describe_configs(self, resources, request_timeout=None):
        self.calls.append("describe_configs")
        if self.describe_error is not None:
            raise self.describe_error
        result = {}
        for resource in resources:
            entries = {"cleanup.policy": SimpleNamespace(value="delete")}
            if resource.name not in self.missing_key:
                entries[MIN_ISR] = SimpleNamespace(value=self._all()[resource.name])
            result[resource] = done(entries)
        return result

    def incremental_alter_configs(self, resources, request_timeout=None):
        self.calls.append("incremental_alter_configs")
        self.altered.append(list(resources))
        result = {}
        for resource in resources:
            error = self.alter_errors.get(resource.name)
            if error is None:
                for entry in resource.incremental_configs:
                    self.configs[resource.name] = entry.value
            result[resource] = done(error=error)
        return result


@pytest.fixture
def logger():
    return logging.getLogger("IsrFailoverTest")
