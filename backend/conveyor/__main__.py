"""Conveyor CLI entry point."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError as SettingsValidationError

env_file = Path(__file__).parent.parent / ".env"
load_dotenv(env_file)

from conveyor import __version__
from conveyor.client import ConveyorAPIError, ConveyorClient, ServiceUnreachableError
from conveyor.config import Settings, get_settings
from conveyor.exceptions import ValidationError
from conveyor.notifier import format_run_summary
from conveyor.pipeline import (
    PipelineCatalog,
    Run,
    RunStatus,
    StageStatus,
    load_pipeline,
    topological_order,
)
from conveyor.pipeline.catalog import SHARED_TEMPLATES_FILE
from conveyor.pipeline.loader import load_shared_templates
from conveyor.runtime import build_runtime
from conveyor.storage import RunStore
from conveyor.trigger import resolve_parameters

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_VALIDATION = 1
EXIT_RUN_FAILED = 2
EXIT_UNREACHABLE = 3

CONFIG_TEMPLATE = """# Conveyor Configuration
# Operational parameters for the pipeline service.
# Webhook URLs and tokens belong in .env, not here.

server:
  host: 127.0.0.1
  port: 8080

engine:
  approval_timeout_seconds: 3600
  stage_timeout_seconds: null
  cancel_grace_seconds: 10
  retry_backoff_seconds: 1
  retry_backoff_cap_seconds: 30

executor:
  max_output_chars: 64000
  kill_grace_seconds: 5

store:
  backend: file
  retention_hours: 168

trigger:
  idempotency_window_seconds: 86400

scheduler:
  enabled: true
  retention_interval_minutes: 30

notifications:
  log: true
  webhook: true
  telegram: true
  notify_on_success: true
"""

SAMPLE_PIPELINE = """# Sample build-and-deploy pipeline.
# Parameters are exported to every stage as environment variables.
name: demo-app
description: Install, check, build, push and deploy the demo app

parameters:
  - name: VERSION
    description: Image tag to build and deploy
  - name: ENVIRONMENT
    default: staging
    choices: [staging, production]

templates:
  npm:
    timeoutSeconds: 600
    retries: 1

stages:
  - name: install
    uses: npm
    command: npm ci
  - name: test
    uses: npm
    command: npm test
    dependsOn: [install]
    parallelGroup: checks
  - name: lint
    uses: npm
    command: npm run lint
    dependsOn: [install]
    parallelGroup: checks
  - name: build
    uses: docker
    command: docker build -t demo-app:$VERSION .
    dependsOn: [test, lint]
  - name: push
    uses: docker
    command: docker push demo-app:$VERSION
    dependsOn: [build]
  - name: approve-deploy
    requiresApproval: true
    description: Manual sign-off before touching the cluster
    dependsOn: [push]
  - name: deploy
    command: kubectl set image deployment/demo-app app=demo-app:$VERSION -n $ENVIRONMENT
    dependsOn: [approve-deploy]
    timeoutSeconds: 300
"""

SHARED_TEMPLATES = """# Stage templates shared by every pipeline in this directory.
templates:
  docker:
    timeoutSeconds: 1800
    retries: 2
"""


def _init_logfire(settings: Settings) -> None:
    """Initialize Logfire if available, without failing commands."""
    try:
        from conveyor.observability import initialize_logfire

        initialize_logfire(settings)
    except Exception as e:
        logger.warning(f"Failed to initialize Logfire: {e}")


def _parse_params(pairs: list[str] | None) -> dict[str, str]:
    params: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValidationError(f"parameter must look like KEY=VALUE, got '{pair}'")
        params[key] = value
    return params


def _shared_templates_for(path: Path) -> dict:
    templates_path = path.parent / SHARED_TEMPLATES_FILE
    if not templates_path.exists() or templates_path.resolve() == path.resolve():
        return {}
    return load_shared_templates(templates_path)


def _print_validation_error(e: ValidationError) -> None:
    print(f"\n❌ {e}\n")
    if len(e.errors) > 1:
        for error in e.errors:
            print(f"  • {error}")
        print()
    if e.cycle:
        print(f"  Cycle: {' -> '.join(e.cycle)}\n")


def _print_run(run: Run) -> None:
    print(f"\n{format_run_summary(run)}\n")


def _exit_code_for(run: Run) -> int:
    return EXIT_OK if run.status == RunStatus.SUCCEEDED else EXIT_RUN_FAILED


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize data directory, configuration and a sample pipeline."""
    data_dir = Path(args.data_dir).resolve()

    try:
        pipelines_dir = data_dir / "pipelines"
        pipelines_dir.mkdir(parents=True, exist_ok=True)
        (data_dir / "runs").mkdir(exist_ok=True)
        logger.info(f"Created data directory: {data_dir}")

        files = {
            data_dir / "config.yaml": CONFIG_TEMPLATE,
            pipelines_dir / "demo-app.yaml": SAMPLE_PIPELINE,
            pipelines_dir / SHARED_TEMPLATES_FILE: SHARED_TEMPLATES,
        }
        for path, content in files.items():
            if path.exists():
                logger.info(f"File already exists: {path}")
                continue
            path.write_text(content, encoding="utf-8")
            logger.info(f"Created {path}")

        print(f"\n✓ Data directory initialized at {data_dir}")
        print("\nNext steps:")
        print("1. Set WEBHOOK_URL or TELEGRAM_BOT_TOKEN in .env to receive run notifications")
        print("2. Review data/config.yaml and data/pipelines/demo-app.yaml")
        print("3. Run 'python -m conveyor validate data/pipelines/demo-app.yaml'")
        print("4. Run 'python -m conveyor serve' to start the API\n")

        return EXIT_OK

    except OSError as e:
        logger.error(f"Failed to initialize: {e}")
        print(f"\n❌ Initialization failed: {e}\n")
        return EXIT_VALIDATION


def cmd_config(args: argparse.Namespace) -> int:
    """Display merged configuration."""
    try:
        settings = get_settings()

        print("\n=== Conveyor Configuration ===\n")
        print(f"Data Directory: {settings.data_dir}")
        print(f"Pipelines Directory: {settings.pipelines_path}\n")

        print("Server:")
        print(f"  Listen: {settings.server.host}:{settings.server.port}")
        print(f"  CLI Target: {settings.server_url}\n")

        print("Engine:")
        approval = settings.engine.approval_timeout_seconds
        print(f"  Approval Timeout: {'none' if approval is None else f'{approval:g}s'}")
        stage_timeout = settings.engine.stage_timeout_seconds
        print(f"  Default Stage Timeout: {'none' if stage_timeout is None else f'{stage_timeout:g}s'}")
        print(f"  Cancel Grace: {settings.engine.cancel_grace_seconds:g}s")
        print(
            f"  Retry Backoff: {settings.engine.retry_backoff_seconds:g}s "
            f"(cap {settings.engine.retry_backoff_cap_seconds:g}s)\n"
        )

        print("Store:")
        print(f"  Backend: {settings.store.backend}")
        print(f"  Retention: {settings.store.retention_hours:g}h\n")

        print("Trigger:")
        print(f"  Idempotency Window: {settings.trigger.idempotency_window_seconds:g}s\n")

        print("Scheduler:")
        print(f"  Enabled: {settings.scheduler.enabled}")
        print(f"  Retention Interval: {settings.scheduler.retention_interval_minutes} min\n")

        print("Notifications:")
        print(f"  Log: {settings.notifications.log}")
        print(f"  Webhook: {'✓ Set' if settings.webhook_url else '✗ Not set'}")
        print(f"  Telegram: {'✓ Set' if settings.telegram_bot_token else '✗ Not set'}")
        print(f"  Notify On Success: {settings.notifications.notify_on_success}")
        print(f"  Logfire: {'✓ Set' if settings.logfire_token else '✗ Not set'}\n")

        return EXIT_OK

    except SettingsValidationError as e:
        print("\n❌ Configuration Error:\n")
        for error in e.errors():
            print(f"  • {'.'.join(str(x) for x in error['loc'])}: {error['msg']}")
        print()
        return EXIT_VALIDATION
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        print(f"\n❌ Failed to load configuration: {e}\n")
        return EXIT_VALIDATION


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a pipeline document and show its execution order."""
    path = Path(args.file)
    try:
        pipeline = load_pipeline(path, _shared_templates_for(path))
    except ValidationError as e:
        _print_validation_error(e)
        return EXIT_VALIDATION

    print(f"\n✓ Pipeline '{pipeline.name}' is valid ({len(pipeline.stages)} stages)\n")
    for index, name in enumerate(topological_order(pipeline), 1):
        stage = pipeline.get_stage(name)
        notes = []
        if stage.parallel_group:
            notes.append(f"group {stage.parallel_group}")
        if stage.requires_approval:
            notes.append("approval")
        if stage.depends_on:
            notes.append(f"after {', '.join(stage.depends_on)}")
        suffix = f"  ({'; '.join(notes)})" if notes else ""
        print(f"  {index}. {name}{suffix}")
    print()
    return EXIT_OK


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the HTTP API."""
    import uvicorn

    from conveyor.api import create_app

    try:
        settings = get_settings()
        if args.debug:
            logging.getLogger().setLevel(logging.DEBUG)

        host = args.host or settings.server.host
        port = args.port or settings.server.port

        print("\n=== Conveyor Pipeline Service ===\n")
        print(f"Version: {__version__}")
        print(f"Pipelines: {settings.pipelines_path}")
        print(f"Listening on http://{host}:{port}\n")

        app = create_app(build_runtime(settings))
        uvicorn.run(app, host=host, port=port, log_level="debug" if args.debug else "info")
        return EXIT_OK

    except KeyboardInterrupt:
        print("\n\nReceived interrupt signal. Shutting down...\n")
        return EXIT_OK
    except Exception as e:
        logger.error(f"Failed to start service: {e}", exc_info=True)
        print(f"\nFailed to start: {e}\n")
        return EXIT_VALIDATION


async def _answer_approvals(runtime, run_id: str, auto_approve: bool) -> None:
    """Approve gated stages of a local run, or ask on the terminal."""
    while True:
        run = runtime.engine.get_status(run_id)
        if run.is_terminal:
            return
        for result in run.results_with(StageStatus.AWAITING_APPROVAL):
            if auto_approve:
                approved = True
            else:
                try:
                    answer = await asyncio.to_thread(
                        input, f"Approve stage '{result.stage_name}'? [y/N] "
                    )
                except EOFError:
                    answer = ""
                approved = answer.strip().lower() in ("y", "yes")

            if approved:
                await runtime.engine.approve(run_id, result.stage_name)
            else:
                print("Not approved, cancelling run")
                await runtime.engine.cancel(run_id)
                return
        await asyncio.sleep(0.2)


async def _run_local(settings: Settings, pipeline, params: dict[str, str], auto_approve: bool) -> Run:
    runtime = build_runtime(settings, catalog=PipelineCatalog([pipeline]), store=RunStore())
    result = await runtime.trigger.trigger(pipeline.name, params)
    print(f"Started run {result.run_id}\n")

    approvals = asyncio.create_task(_answer_approvals(runtime, result.run_id, auto_approve))
    try:
        return await runtime.engine.wait(result.run_id)
    finally:
        approvals.cancel()
        await runtime.engine.shutdown()


def cmd_run(args: argparse.Namespace) -> int:
    """Execute a pipeline file in-process with the shell executor."""
    path = Path(args.file)
    try:
        settings = get_settings()
        _init_logfire(settings)
        pipeline = load_pipeline(path, _shared_templates_for(path))
        params = resolve_parameters(pipeline, _parse_params(args.param))
    except ValidationError as e:
        _print_validation_error(e)
        return EXIT_VALIDATION

    try:
        run = asyncio.run(_run_local(settings, pipeline, params, args.auto_approve))
    except KeyboardInterrupt:
        print("\n\nReceived interrupt signal. Run abandoned.\n")
        return EXIT_RUN_FAILED

    _print_run(run)
    return _exit_code_for(run)


def _remote(args: argparse.Namespace, action) -> int:
    """Run a client coroutine and map failures to exit codes."""
    url = args.url or get_settings().server_url
    try:
        return asyncio.run(action(ConveyorClient(url)))
    except ServiceUnreachableError as e:
        print(f"\n❌ {e}\n")
        return EXIT_UNREACHABLE
    except ConveyorAPIError as e:
        print(f"\n❌ {e}\n")
        if e.status_code == 503:
            return EXIT_UNREACHABLE
        return EXIT_VALIDATION
    except ValidationError as e:
        _print_validation_error(e)
        return EXIT_VALIDATION


def cmd_trigger(args: argparse.Namespace) -> int:
    """Trigger a pipeline on the running service."""

    async def action(conveyor: ConveyorClient) -> int:
        params = _parse_params(args.param)
        async with conveyor:
            response = await conveyor.trigger(args.pipeline, params, args.idempotency_key)
            run_id = response["runId"]
            print(f"\n✓ Run {run_id} accepted ({response['status']})\n")
            if not args.wait:
                return EXIT_OK
            run = await conveyor.wait_for_run(run_id, poll_interval=args.poll_interval)
        _print_run(run)
        return _exit_code_for(run)

    return _remote(args, action)


def cmd_status(args: argparse.Namespace) -> int:
    """Show a run's current status."""

    async def action(conveyor: ConveyorClient) -> int:
        async with conveyor:
            run = await conveyor.get_run(args.run_id)
        _print_run(run)
        return EXIT_OK

    return _remote(args, action)


def cmd_approve(args: argparse.Namespace) -> int:
    """Approve a stage that is awaiting approval."""

    async def action(conveyor: ConveyorClient) -> int:
        async with conveyor:
            await conveyor.approve(args.run_id, args.stage)
        print(f"\n✓ Stage '{args.stage}' of run {args.run_id} approved\n")
        return EXIT_OK

    return _remote(args, action)


def cmd_cancel(args: argparse.Namespace) -> int:
    """Request cancellation of a run."""

    async def action(conveyor: ConveyorClient) -> int:
        async with conveyor:
            response = await conveyor.cancel(args.run_id)
        print(f"\n✓ Cancellation requested for run {args.run_id} ({response['status']})\n")
        return EXIT_OK

    return _remote(args, action)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Conveyor: HTTP-triggered build-and-deploy pipelines",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Conveyor {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    parser_init = subparsers.add_parser(
        "init",
        help="Initialize data directory, configuration and a sample pipeline",
    )
    parser_init.add_argument("--data-dir", default="data", help="Directory to create")
    parser_init.set_defaults(func=cmd_init)

    parser_config = subparsers.add_parser(
        "config",
        help="Display merged configuration",
    )
    parser_config.set_defaults(func=cmd_config)

    parser_validate = subparsers.add_parser(
        "validate",
        help="Validate a pipeline document",
    )
    parser_validate.add_argument("file", help="Pipeline YAML or JSON file")
    parser_validate.set_defaults(func=cmd_validate)

    parser_serve = subparsers.add_parser(
        "serve",
        help="Start the HTTP API and scheduler",
    )
    parser_serve.add_argument("--host", help="Bind address (default from config)")
    parser_serve.add_argument("--port", type=int, help="Port (default from config)")
    parser_serve.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser_serve.set_defaults(func=cmd_serve)

    parser_run = subparsers.add_parser(
        "run",
        help="Run a pipeline file locally, without the service",
    )
    parser_run.add_argument("file", help="Pipeline YAML or JSON file")
    parser_run.add_argument(
        "-p", "--param", action="append", metavar="KEY=VALUE", help="Build parameter"
    )
    parser_run.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve every approval stage without asking",
    )
    parser_run.set_defaults(func=cmd_run)

    remote_parent = argparse.ArgumentParser(add_help=False)
    remote_parent.add_argument("--url", help="Service URL (default: SERVER_URL setting)")

    parser_trigger = subparsers.add_parser(
        "trigger",
        parents=[remote_parent],
        help="Trigger a pipeline on the running service",
    )
    parser_trigger.add_argument("pipeline", help="Pipeline name")
    parser_trigger.add_argument(
        "-p", "--param", action="append", metavar="KEY=VALUE", help="Build parameter"
    )
    parser_trigger.add_argument("--idempotency-key", help="Deduplicate repeated triggers")
    parser_trigger.add_argument(
        "--wait", action="store_true", help="Wait for the run to finish"
    )
    parser_trigger.add_argument(
        "--poll-interval", type=float, default=2.0, help="Seconds between status polls"
    )
    parser_trigger.set_defaults(func=cmd_trigger)

    parser_status = subparsers.add_parser(
        "status",
        parents=[remote_parent],
        help="Show a run's status",
    )
    parser_status.add_argument("run_id", help="Run ID")
    parser_status.set_defaults(func=cmd_status)

    parser_approve = subparsers.add_parser(
        "approve",
        parents=[remote_parent],
        help="Approve a stage awaiting approval",
    )
    parser_approve.add_argument("run_id", help="Run ID")
    parser_approve.add_argument("stage", help="Stage name")
    parser_approve.set_defaults(func=cmd_approve)

    parser_cancel = subparsers.add_parser(
        "cancel",
        parents=[remote_parent],
        help="Cancel a run",
    )
    parser_cancel.add_argument("run_id", help="Run ID")
    parser_cancel.set_defaults(func=cmd_cancel)

    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_VALIDATION

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
