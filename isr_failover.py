#!/usr/bin/env python3
"""
Kafka min.insync.replicas Failover Script

Changes min.insync.replicas for every non-internal topic that currently holds
an expected value (optionally restricted by a topic-name regex). Intended as a
manual step while failing a stretched cluster over: lower the value while a
site is down, raise it again once replicas are back.

Topic configs are read with one batched DescribeConfigs request and written
with one batched IncrementalAlterConfigs request.

Usage: python isr_failover.py -b broker:9092 -c 3 -f 2 [-t 'orders-.*'] [--dry-run]
"""

import argparse
import json
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Pattern, Union

import yaml
from confluent_kafka import KafkaError, KafkaException, TopicCollection
from confluent_kafka.admin import (
    AdminClient,
    AlterConfigOpType,
    ConfigEntry,
    ConfigResource,
    ResourceType,
)

__version__ = "1.0.0"

MIN_INSYNC_REPLICAS = "min.insync.replicas"

ConfigSnapshot = Dict[ConfigResource, Optional[str]]


# ==============================================================================
# LOGGING
# ==============================================================================

def setup_logging(log_dir: str = "./logs", verbose: bool = False) -> logging.Logger:
    """Setup logging with file and console handlers."""
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_path / f"isr_failover_{timestamp}.log"

    logger = logging.getLogger("IsrFailover")
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    # File handler
    fh = logging.FileHandler(log_file)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)

    # Console handler
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(formatter)

    logger.addHandler(fh)
    logger.addHandler(ch)
    logger.info(f"Log file: {log_file}")

    return logger


# ==============================================================================
# ERRORS
# ==============================================================================

class FailoverError(Exception):
    """Base class for every error that aborts a failover run."""


class ConnectivityError(FailoverError):
    """Cluster could not be reached or the client could not authenticate."""


class PermissionDeniedError(FailoverError):
    """Authenticated, but the cluster refused the operation."""


class AdminRequestError(FailoverError):
    """Admin request failed for a reason other than connectivity or ACLs."""


class ConfigKeyMissingError(FailoverError):
    """A described topic did not report min.insync.replicas."""

    def __init__(self, topic: str):
        super().__init__(f"Topic {topic} has no {MIN_INSYNC_REPLICAS} entry")
        self.topic = topic


class OverlayFileNotFound(FailoverError):
    """The client configuration file does not exist."""


class OverlayFileReadError(FailoverError):
    """The client configuration file exists but could not be read or parsed."""


class PreCheckError(FailoverError):
    """A pre-flight validation rejected the change."""


class PartialApplyError(FailoverError):
    """One or more topics in the batched alter request failed."""

    def __init__(self, failures: Dict[str, Exception], updated: int):
        self.failures = failures
        self.updated = updated
        names = ', '.join(sorted(failures))
        super().__init__(
            f"Failed to update {len(failures)} topic(s) ({updated} updated): {names}"
        )


# ==============================================================================
# CONFIGURATION
# ==============================================================================

PROPERTY_ESCAPES = {'t': '\t', 'n': '\n', 'r': '\r', 'f': '\f'}
PROPERTY_WHITESPACE = ' \t\f'


def _unescape_property(text: str) -> str:
    def replace(match):
        escaped = match.group(1)
        if escaped is None:
            return ''
        if len(escaped) == 5:
            return chr(int(escaped[1:], 16))
        return PROPERTY_ESCAPES.get(escaped, escaped)

    return re.sub(r'\\(u[0-9a-fA-F]{4}|.)|\\$', replace, text)


def _logical_lines(text: str):
    """Join backslash-continued lines; skip blanks and comments."""
    pending = None
    for raw in text.splitlines():
        line = raw.lstrip(PROPERTY_WHITESPACE)
        if pending is None:
            if not line or line[0] in '#!':
                continue
            pending = ''

        # An odd number of trailing backslashes continues onto the next line
        trailing = len(line) - len(line.rstrip('\\'))
        if trailing % 2:
            pending += line[:-1]
            continue

        yield pending + line
        pending = None

    if pending:
        yield pending


def parse_properties(text: str) -> Dict[str, str]:
    """
    Parse Java-style properties text.

    Handles key=value, key: value and key value separators, # and ! comments,
    trailing-backslash line continuation and backslash escapes (\\:, \\=,
    \\\\, \\t, \\n, \\uXXXX).
    """
    properties = {}
    for line in _logical_lines(text):
        end = 0
        while end < len(line) and line[end] not in '=:' + PROPERTY_WHITESPACE:
            end += 2 if line[end] == '\\' else 1
        end = min(end, len(line))

        value = line[end:].lstrip(PROPERTY_WHITESPACE)
        if value[:1] in ('=', ':'):
            value = value[1:].lstrip(PROPERTY_WHITESPACE)

        # A bare key is a property with an empty value
        properties[_unescape_property(line[:end])] = _unescape_property(value)
    return properties


def read_config_file(properties: Dict[str, str], config_file: Optional[str],
                     logger: logging.Logger, strict: bool = False) -> Dict[str, str]:
    """
    Merge the contents of a client config file into properties.

    Supports .properties files and flat YAML mappings (.yaml / .yml).
    A missing file always raises OverlayFileNotFound. Any other read or parse
    error raises OverlayFileReadError in strict mode; otherwise it is logged
    and whatever was already loaded is kept.
    """
    if config_file is None:
        return properties

    path = Path(config_file)
    try:
        text = path.read_text()
        if path.suffix.lower() in ('.yaml', '.yml'):
            loaded = yaml.safe_load(text) or {}
            if not isinstance(loaded, dict):
                raise ValueError(f"expected a mapping, got {type(loaded).__name__}")
            loaded = {str(k): str(v) for k, v in loaded.items()}
        else:
            loaded = parse_properties(text)

        properties.update(loaded)
        logger.info(f"✓ Loaded {len(loaded)} client properties from {config_file}")

    except FileNotFoundError:
        raise OverlayFileNotFound(f"Config file {config_file} not found") from None
    except (OSError, UnicodeDecodeError, yaml.YAMLError, ValueError) as e:
        if strict:
            raise OverlayFileReadError(f"Could not read config file {config_file}: {e}") from e
        logger.error(f"Could not read config file {config_file}: {e}")
        logger.warning("⚠ Continuing with the properties loaded so far")

    return properties


def build_client_config(bootstrap_servers: str, config_file: Optional[str],
                        logger: logging.Logger, strict: bool = False) -> Dict[str, str]:
    """Build the AdminClient configuration; file properties override defaults."""
    properties = {'bootstrap.servers': bootstrap_servers}
    return read_config_file(properties, config_file, logger, strict)


# ==============================================================================
# KAFKA ADMIN
# ==============================================================================

@dataclass(frozen=True)
class TopicDescriptor:
    name: str
    is_internal: bool = False
    replication_factor: Optional[int] = None


class KafkaAdmin:
    """Scoped wrapper around confluent_kafka's AdminClient."""

    CONNECTIVITY_CODES = {
        KafkaError._TRANSPORT,
        KafkaError._ALL_BROKERS_DOWN,
        KafkaError._TIMED_OUT,
        KafkaError._AUTHENTICATION,
        KafkaError._RESOLVE,
        KafkaError._SSL,
        KafkaError.NETWORK_EXCEPTION,
        KafkaError.REQUEST_TIMED_OUT,
        KafkaError.SASL_AUTHENTICATION_FAILED,
    }

    PERMISSION_CODES = {
        KafkaError.TOPIC_AUTHORIZATION_FAILED,
        KafkaError.CLUSTER_AUTHORIZATION_FAILED,
    }

    def __init__(self, client_config: Dict[str, str], logger: logging.Logger,
                 request_timeout: Optional[float] = None, client=None):
        self.client_config = client_config
        self.logger = logger
        self.request_timeout = request_timeout
        self._provided_client = client
        self._client = None

    def __enter__(self) -> 'KafkaAdmin':
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def open(self):
        if self._client is not None:
            return
        self.logger.info(f"Connecting to {self.client_config.get('bootstrap.servers')}")
        if self._provided_client is not None:
            self._client = self._provided_client
            return
        try:
            self._client = AdminClient(self.client_config)
        except KafkaException as e:
            raise self.translate(e, "create admin client") from e

    def close(self):
        if self._client is None:
            return
        self.logger.debug("Releasing admin client")
        self._client = None

    @property
    def client(self):
        if self._client is None:
            raise AdminRequestError("Admin session is not open")
        return self._client

    def _timeout_kwargs(self, key: str = 'request_timeout') -> Dict[str, float]:
        return {key: self.request_timeout} if self.request_timeout is not None else {}

    def translate(self, exc: Exception, action: str) -> FailoverError:
        """Map a client exception onto the failover error taxonomy."""
        error = None
        if isinstance(exc, KafkaException) and exc.args and isinstance(exc.args[0], KafkaError):
            error = exc.args[0]

        if error is None:
            return AdminRequestError(f"Failed to {action}: {exc}")

        message = f"Failed to {action}: {error.str()}"
        if error.code() in self.CONNECTIVITY_CODES:
            return ConnectivityError(message)
        if error.code() in self.PERMISSION_CODES:
            return PermissionDeniedError(message)
        return AdminRequestError(message)

    def list_topics(self) -> List[TopicDescriptor]:
        """List every topic in the cluster with its internal flag."""
        try:
            metadata = self.client.list_topics(**self._timeout_kwargs('timeout'))
            names = sorted(metadata.topics)
            if not names:
                return []

            futures = self.client.describe_topics(
                TopicCollection(names), **self._timeout_kwargs()
            )
            topics = []
            for name, future in futures.items():
                description = future.result()
                replica_counts = [len(p.replicas) for p in description.partitions]
                topics.append(TopicDescriptor(
                    name=name,
                    is_internal=bool(description.is_internal),
                    replication_factor=min(replica_counts) if replica_counts else None,
                ))
            return sorted(topics, key=lambda t: t.name)

        except KafkaException as e:
            raise self.translate(e, "list topics") from e

    def describe_configs(self, resources: List[ConfigResource]) -> Dict[ConfigResource, Dict[str, str]]:
        """Describe configs for all resources in one request."""
        if not resources:
            return {}
        try:
            futures = self.client.describe_configs(resources, **self._timeout_kwargs())
            return {
                resource: {key: entry.value for key, entry in future.result().items()}
                for resource, future in futures.items()
            }
        except KafkaException as e:
            raise self.translate(e, "describe topic configs") from e

    def incremental_alter_configs(self, resources: List[ConfigResource]) -> Dict[str, Optional[FailoverError]]:
        """
        Apply incremental config changes in one request.

        Returns a per-topic outcome: None when the topic was updated, the
        translated error otherwise. Failure to submit the request raises.
        """
        if not resources:
            return {}
        try:
            futures = self.client.incremental_alter_configs(resources, **self._timeout_kwargs())
        except KafkaException as e:
            raise self.translate(e, "alter topic configs") from e

        outcome = {}
        for resource, future in futures.items():
            try:
                future.result()
                outcome[resource.name] = None
            except KafkaException as e:
                outcome[resource.name] = self.translate(e, f"alter {resource.name}")
        return outcome


# ==============================================================================
# SELECTION
# ==============================================================================

def select_topics(snapshot: ConfigSnapshot, expected_current: int,
                  name_pattern: Optional[Union[str, Pattern]] = None,
                  logger: Optional[logging.Logger] = None) -> List[ConfigResource]:
    """
    Select the topics whose min.insync.replicas equals expected_current.

    When name_pattern is given the topic name must match it in full; a
    substring match does not count. Topics with no value are skipped.
    """
    logger = logger or logging.getLogger("IsrFailover")
    if isinstance(name_pattern, str):
        name_pattern = re.compile(name_pattern)
    expected = str(expected_current)

    selection = []
    for resource in sorted(snapshot, key=lambda r: r.name):
        value = snapshot[resource]
        topic = resource.name

        if value is None:
            logger.debug(f"Topic {topic} ignored; no {MIN_INSYNC_REPLICAS} value")
            continue

        if value == expected and (name_pattern is None or name_pattern.fullmatch(topic)):
            logger.debug(f"Topic {topic} matched; {MIN_INSYNC_REPLICAS}={value}")
            selection.append(resource)
        else:
            logger.debug(f"Topic {topic} ignored; {MIN_INSYNC_REPLICAS}={value}")

    return selection


# ==============================================================================
# PRE-CHECKS
# ==============================================================================

class PreChecks:
    """Pre-flight validation checks."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.errors = []

    def validate_future_value(self, selection: List[ConfigResource],
                              topics: Dict[str, TopicDescriptor], future_value: int) -> bool:
        """min.insync.replicas must be positive and fit every topic's RF."""
        self.logger.info("=" * 80)
        self.logger.info(f"PRE-CHECKS: {MIN_INSYNC_REPLICAS}={future_value}")
        self.logger.info("=" * 80)

        if future_value < 1:
            self.errors.append(f"{MIN_INSYNC_REPLICAS} must be >= 1, got {future_value}")
            self.logger.error(f"✗ Invalid {MIN_INSYNC_REPLICAS}")
            return False

        for resource in selection:
            descriptor = topics.get(resource.name)
            rf = descriptor.replication_factor if descriptor else None
            if rf is None:
                self.logger.warning(f"⚠ Replication factor unknown for {resource.name}")
                continue
            if future_value > rf:
                self.errors.append(
                    f"{resource.name}: {MIN_INSYNC_REPLICAS} ({future_value}) cannot exceed RF ({rf})"
                )

        if self.errors:
            for error in self.errors:
                self.logger.error(f"  ✗ {error}")
            return False

        self.logger.info(f"✓ {MIN_INSYNC_REPLICAS} ({future_value}) <= RF for {len(selection)} topics")
        return True


# ==============================================================================
# MAIN ORCHESTRATOR
# ==============================================================================

@dataclass
class FailoverResult:
    listed: int = 0
    selected: int = 0
    updated: int = 0
    dry_run: bool = False
    snapshot_file: Optional[str] = None
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failures


class IsrFailover:
    """Main orchestrator: enumerate, describe, select, alter."""

    def __init__(self, admin: KafkaAdmin, current_isr: int, future_isr: int,
                 logger: logging.Logger, topics_mask: Optional[str] = None,
                 dry_run: bool = False, run_prechecks: bool = True,
                 snapshot_dir: Optional[str] = None):
        self.admin = admin
        self.current_isr = current_isr
        self.future_isr = future_isr
        self.logger = logger
        self.pattern = re.compile(topics_mask) if topics_mask else None
        self.dry_run = dry_run
        self.run_prechecks = run_prechecks
        self.snapshot_dir = snapshot_dir
        self.checks = PreChecks(logger)

    def list_external_topics(self) -> List[TopicDescriptor]:
        """List topics, dropping the ones the cluster flags as internal."""
        self.logger.info("Listing topics")
        topics = self.admin.list_topics()
        external = [t for t in topics if not t.is_internal]
        skipped = len(topics) - len(external)
        if skipped:
            self.logger.debug(f"Skipping {skipped} internal topics")
        return external

    def describe_configs(self, topics: List[TopicDescriptor]) -> ConfigSnapshot:
        """Fetch the current min.insync.replicas of every topic in one request."""
        self.logger.info("Describing topic configs")
        resources = [ConfigResource(ResourceType.TOPIC, t.name) for t in topics]
        configs = self.admin.describe_configs(resources)

        snapshot = {}
        for resource, entries in configs.items():
            value = entries.get(MIN_INSYNC_REPLICAS)
            if value is None:
                self.logger.warning(f"⚠ {ConfigKeyMissingError(resource.name)}; topic will be ignored")
            snapshot[resource] = value
        return snapshot

    def select(self, snapshot: ConfigSnapshot) -> List[ConfigResource]:
        return select_topics(snapshot, self.current_isr, self.pattern, self.logger)

    def apply(self, selection: List[ConfigResource]) -> int:
        """Set min.insync.replicas=future_isr on every selected topic in one request."""
        if not selection:
            self.logger.info("No topics to update")
            return 0

        if self.dry_run:
            for resource in selection:
                self.logger.info(
                    f"[DRY-RUN] Would set {MIN_INSYNC_REPLICAS}={self.future_isr} on {resource.name}"
                )
            return 0

        instruction = [ConfigEntry(
            MIN_INSYNC_REPLICAS, str(self.future_isr),
            incremental_operation=AlterConfigOpType.SET,
        )]
        resources = [
            ConfigResource(ResourceType.TOPIC, resource.name, incremental_configs=instruction)
            for resource in selection
        ]

        self.logger.info("Performing incremental alter configs")
        outcome = self.admin.incremental_alter_configs(resources)

        failures = {topic: error for topic, error in outcome.items() if error is not None}
        updated = len(outcome) - len(failures)
        if failures:
            for topic, error in sorted(failures.items()):
                self.logger.error(f"  ✗ {topic}: {error}")
            kinds = {type(error) for error in failures.values()}
            if updated == 0 and len(kinds) == 1 and kinds <= {ConnectivityError, PermissionDeniedError}:
                raise next(iter(failures.values()))
            raise PartialApplyError(failures, updated)

        self.logger.info("Alter operation complete")
        return updated

    def save_snapshot(self, snapshot: ConfigSnapshot, selection: List[ConfigResource]) -> Optional[str]:
        """Save pre-change values of the selected topics so they can be restored."""
        if not self.snapshot_dir:
            return None
        try:
            os.makedirs(self.snapshot_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            snapshot_file = os.path.join(self.snapshot_dir, f"min_isr_{timestamp}.json")

            data = {
                'timestamp': timestamp,
                'snapshot_time': datetime.now().isoformat(),
                'config': MIN_INSYNC_REPLICAS,
                'current_value': self.current_isr,
                'future_value': self.future_isr,
                'topics': {r.name: snapshot[r] for r in selection},
            }
            with open(snapshot_file, 'w') as f:
                json.dump(data, f, indent=2)

            self.logger.info(f"✓ Snapshot saved: {snapshot_file}")
            return snapshot_file

        except OSError as e:
            self.logger.warning(f"⚠ Failed to save snapshot, continuing: {e}")
            return None

    def run(self) -> FailoverResult:
        """Execute the whole workflow; raises FailoverError on the first failure."""
        result = FailoverResult(dry_run=self.dry_run)

        self.logger.info("=" * 80)
        self.logger.info("KAFKA MIN.INSYNC.REPLICAS FAILOVER")
        self.logger.info("=" * 80)
        self.logger.info(f"Current {MIN_INSYNC_REPLICAS}: {self.current_isr}")
        self.logger.info(f"Future {MIN_INSYNC_REPLICAS}: {self.future_isr}")
        self.logger.info(f"Topic filter: {self.pattern.pattern if self.pattern else '(all topics)'}")
        self.logger.info(f"Dry run: {self.dry_run}")
        self.logger.info("=" * 80)

        with self.admin:
            topics = self.list_external_topics()
            result.listed = len(topics)
            self.logger.info(f"Found {result.listed} topics")

            snapshot = self.describe_configs(topics)
            selection = self.select(snapshot)
            result.selected = len(selection)
            self.logger.info(
                f"Updating {MIN_INSYNC_REPLICAS}={self.future_isr} for {result.selected} topics"
            )

            if selection and self.run_prechecks:
                by_name = {t.name: t for t in topics}
                if not self.checks.validate_future_value(selection, by_name, self.future_isr):
                    raise PreCheckError(f"Pre-checks failed: {len(self.checks.errors)} error(s)")

            if selection and not self.dry_run:
                result.snapshot_file = self.save_snapshot(snapshot, selection)

            try:
                result.updated = self.apply(selection)
            except PartialApplyError as e:
                result.updated = e.updated
                result.failures = {topic: str(error) for topic, error in e.failures.items()}
                self._print_summary(result)
                raise

        self._print_summary(result)
        return result

    def _print_summary(self, result: FailoverResult):
        self.logger.info("=" * 80)
        self.logger.info("OPERATION SUMMARY")
        self.logger.info("=" * 80)
        self.logger.info(f"Topics listed: {result.listed}")
        self.logger.info(f"Topics selected: {result.selected}")
        self.logger.info(f"Topics updated: {result.updated}")
        if result.failures:
            self.logger.error(f"Topics failed: {len(result.failures)}")
        elif result.dry_run:
            self.logger.info("✓ Dry run completed, no changes made")
        else:
            self.logger.info("✓ Operation completed successfully")
        self.logger.info("=" * 80)


# ==============================================================================
# CLI
# ==============================================================================

def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {value}")
    return number


def regex(value: str) -> str:
    try:
        re.compile(value)
    except re.error as e:
        raise argparse.ArgumentTypeError(f"invalid regex {value!r}: {e}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='kafka-isr-failover',
        description='Modifies min.insync.replicas for a set of topics to enable failover in a Kafka cluster',
        epilog="Example: kafka-isr-failover -b broker:9092 -c 3 -f 2 -t 'orders-.*' --dry-run"
    )
    parser.add_argument('-b', '--bootstrap-server', required=True, help='Bootstrap servers')
    parser.add_argument('-c', '--current-isr', required=True, type=positive_int,
                        help=f'Current {MIN_INSYNC_REPLICAS}')
    parser.add_argument('-f', '--future-isr', required=True, type=positive_int,
                        help=f'Future {MIN_INSYNC_REPLICAS}')
    parser.add_argument('-t', '--topics', type=regex,
                        help='Regex of topic names to match against (whole name)')
    parser.add_argument('--config-file',
                        help='Client properties (.properties or .yaml) added to the admin config')
    parser.add_argument('--strict-config', action='store_true',
                        help='Fail if the config file cannot be parsed instead of continuing')
    parser.add_argument('--dry-run', action='store_true', help='Simulate without making changes')
    parser.add_argument('--skip-prechecks', action='store_true',
                        help='Do not validate the future value against replication factors')
    parser.add_argument('--snapshot-dir',
                        help='Directory to save pre-change values of the selected topics')
    parser.add_argument('--request-timeout', type=float,
                        help='Admin request timeout in seconds (default: client default)')
    parser.add_argument('--log-dir', default='./logs', help='Directory for log files (default: ./logs)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log per-topic decisions to console')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def execute(argv: Optional[List[str]] = None, logger: Optional[logging.Logger] = None,
            client=None) -> int:
    """Run the tool and return the process exit status."""
    args = build_parser().parse_args(argv)
    logger = logger or setup_logging(args.log_dir, args.verbose)

    try:
        client_config = build_client_config(
            args.bootstrap_server, args.config_file, logger, args.strict_config
        )
    except FailoverError as e:
        logger.error(f"✗ {e}")
        return 1

    admin = KafkaAdmin(client_config, logger, args.request_timeout, client=client)
    failover = IsrFailover(
        admin, args.current_isr, args.future_isr, logger,
        topics_mask=args.topics,
        dry_run=args.dry_run,
        run_prechecks=not args.skip_prechecks,
        snapshot_dir=args.snapshot_dir,
    )

    try:
        failover.run()
        return 0
    except FailoverError as e:
        logger.error(f"✗ {type(e).__name__}: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


def main():
    """Main entry point."""
    sys.exit(execute())


if __name__ == '__main__':
    main()
