"""Runtime entry points for the VPN gateway orchestrator.

SECRETLESS ARCHITECTURE:
The Azure provider authenticates with a managed identity only. A client
secret or certificate in the environment is a fatal startup error.

Exit codes:
- 0: success
- 1: configuration, provisioning or validation failure
- 2: security violation (credentials detected in the environment)
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .azure_provider import AzureNetworkProvider
from .config import Config
from .dependency import resolve_plan
from .engine import ConvergenceEngine, PlannedAction, RunResult
from .errors import ConfigurationError, IncompleteGraphError, OrchestratorError
from .models import VpnGatewaySpec
from .outputs import project
from .provider import Provider
from .security import SecretlessViolationError, get_managed_identity_credential
from .spec_loader import load_spec
from .validator import ValidationReport, validate_deployment

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_SECURITY_VIOLATION = 2

# LogRecord attributes that are not structured extra fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stderr.

    stdout is reserved for command results (outputs, plans, reports).
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    # Replace the handler from an earlier call instead of stacking another
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


class Command(str, Enum):
    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"
    VALIDATE = "validate"


@dataclass
class RunOutcome:
    """What a command produced, for the CLI to render."""

    exit_code: int
    outputs: dict[str, Any] | None = None
    result: RunResult | None = None
    planned: list[PlannedAction] = field(default_factory=list)
    validation: ValidationReport | None = None


def build_provider(config: Config, spec: VpnGatewaySpec) -> AzureNetworkProvider:
    """Build the Azure provider with managed identity credentials.

    Raises:
        SecretlessViolationError: If credential secrets are in the environment.
    """
    credential = get_managed_identity_credential(config.managed_identity_client_id)
    return AzureNetworkProvider(
        subscription_id=config.subscription_id,
        resource_group_name=spec.resource_group_name,
        credential=credential,
    )


async def run_command(
    command: Command, config: Config, provider: Provider | None = None
) -> RunOutcome:
    """Load the declaration and run one command against the provider.

    Args:
        command: Command to run.
        config: Validated orchestrator configuration.
        provider: Provider to use; the Azure provider is built when omitted.
    """
    try:
        spec = load_spec(config.spec_file)
        graph = spec.to_resource_graph()
        plan = resolve_plan(graph)
        if provider is None:
            provider = build_provider(config, spec)
    except ConfigurationError as e:
        logger.error(
            "Declaration rejected",
            extra={"error": str(e), "spec_file": str(config.spec_file)},
        )
        return RunOutcome(EXIT_FAILURE)
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return RunOutcome(EXIT_SECURITY_VIOLATION)

    engine = ConvergenceEngine(provider, config.convergence)
    _install_signal_handlers(engine)

    logger.info(
        "Starting command",
        extra={
            "command": command.value,
            "vpn_gateway_name": spec.vpn_gateway_name,
            "resource_group": spec.resource_group_name,
            "waves": plan.describe(),
        },
    )

    try:
        match command:
            case Command.PLAN:
                return RunOutcome(EXIT_SUCCESS, planned=await engine.plan(graph, plan))

            case Command.APPLY:
                if isinstance(provider, AzureNetworkProvider):
                    await provider.ensure_resource_group(spec.location, spec.effective_tags)
                result = await engine.apply(graph, plan)
                _audit(config, result)
                if not result.success:
                    return RunOutcome(EXIT_FAILURE, result=result)
                return RunOutcome(EXIT_SUCCESS, outputs=project(graph), result=result)

            case Command.DESTROY:
                result = await engine.destroy(graph, plan)
                _audit(config, result)
                return RunOutcome(EXIT_SUCCESS if result.success else EXIT_FAILURE, result=result)

            case Command.VALIDATE:
                missing = await engine.refresh(graph, plan)
                if missing:
                    raise IncompleteGraphError([str(ref) for ref in missing])
                outputs = project(graph)
                report = await validate_deployment(spec, outputs, provider)
                exit_code = EXIT_SUCCESS if report.passed else EXIT_FAILURE
                return RunOutcome(exit_code, outputs=outputs, validation=report)

            case _:
                raise ValueError(f"Unknown command: {command}")

    except OrchestratorError as e:
        logger.error(
            "Command failed",
            extra={"command": command.value, "error": str(e), "error_type": type(e).__name__},
        )
        return RunOutcome(EXIT_FAILURE)


def _audit(config: Config, result: RunResult) -> None:
    if not config.enable_audit_logging:
        return
    for report in result.reports:
        logger.info("Audit", extra={"operation": result.operation.value, **report.as_dict()})


def _install_signal_handlers(engine: ConvergenceEngine) -> None:
    """Abort the engine on SIGTERM/SIGINT so in-flight nodes settle as Failed."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        engine.abort()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except (NotImplementedError, RuntimeError):
            # Not supported off the main thread or on this platform
            logger.debug("Signal handler not installed", extra={"signal": sig.name})


async def main(command: Command = Command.APPLY) -> int:
    """Run one command with configuration from the environment.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    outcome = await run_command(command, config)
    if outcome.outputs is not None:
        print(json.dumps(outcome.outputs, indent=2))
    elif outcome.result is not None:
        print(json.dumps([r.as_dict() for r in outcome.result.reports], indent=2))
    return outcome.exit_code


def run() -> None:
    """Entry point for the container image: apply the declaration."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
