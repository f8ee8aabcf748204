from __future__ import annotations

import pytest
from confluent_kafka import KafkaError, KafkaException

from conftest import FakeAdminClient
from isr_failover import execute


BASE_ARGS = ["-b", "broker:9092", "-c", "2", "-f", "3"]


class TestExitStatus:
    def test_success(self, logger):
        client = FakeAdminClient({"A": 2, "B": 3, "C": 2})

        assert execute(BASE_ARGS, logger=logger, client=client) == 0
        assert client.configs == {"A": "3", "B": "3", "C": "3"}

    def test_topic_filter(self, logger):
        client = FakeAdminClient({"orders-1": 2, "my-orders-1": 2})

        assert execute(BASE_ARGS + ["-t", "orders-.*"], logger=logger, client=client) == 0
        assert client.configs == {"orders-1": "3", "my-orders-1": "2"}

    def test_missing_config_file_exits_before_cluster_calls(self, logger, tmp_path):
        client = FakeAdminClient({"A": 2})
        args = BASE_ARGS + ["--config-file", str(tmp_path / "missing.properties")]

        assert execute(args, logger=logger, client=client) == 1
        assert client.calls == []
        assert client.configs == {"A": "2"}

    def test_connectivity_failure(self, logger):
        client = FakeAdminClient({"A": 2}, list_error=KafkaException(KafkaError(KafkaError._ALL_BROKERS_DOWN)))

        assert execute(BASE_ARGS, logger=logger, client=client) == 1

    def test_partial_failure(self, logger):
        client = FakeAdminClient(
            {"A": 2, "B": 2},
            alter_errors={"A": KafkaException(KafkaError(KafkaError.INVALID_CONFIG))},
        )

        assert execute(BASE_ARGS, logger=logger, client=client) == 1
        assert client.configs["B"] == "3"

    def test_dry_run(self, logger):
        client = FakeAdminClient({"A": 2})

        assert execute(BASE_ARGS + ["--dry-run"], logger=logger, client=client) == 0
        assert client.configs == {"A": "2"}


class TestArguments:
    def test_invalid_regex_is_usage_error(self, logger):
        with pytest.raises(SystemExit) as excinfo:
            execute(BASE_ARGS + ["-t", "orders-("], logger=logger, client=FakeAdminClient({}))
        assert excinfo.value.code == 2

    def test_non_positive_isr_is_usage_error(self, logger):
        with pytest.raises(SystemExit) as excinfo:
            execute(["-b", "broker:9092", "-c", "0", "-f", "2"], logger=logger, client=FakeAdminClient({}))
        assert excinfo.value.code == 2

    def test_required_arguments(self, logger):
        with pytest.raises(SystemExit):
            execute(["-b", "broker:9092"], logger=logger)
