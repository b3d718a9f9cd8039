# cadenza/core/cli.py
"""
CLI for running cadenza tasks.

    cadenza run myapp.tasks:audit            one runtime in the foreground
    cadenza autoscale myapp.tasks:audit      supervisor that scales workers
    cadenza publish orders.created '{"id": 1}'

Tasks are named by ``module:attribute`` locators. Convenience: if cwd has a
pyproject.toml, cwd is added to sys.path before importing.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from cadenza.core.autoscaler.autoscaler import Autoscaler
from cadenza.core.autoscaler.spawner import MultiprocessingSpawner
from cadenza.core.codec.payload import JSON, PayloadError, encode_payload
from cadenza.core.config import ConfigHolder
from cadenza.core.defaults import ExitCode
from cadenza.core.errors import CadenzaError, ConfigurationError, ErrorCode
from cadenza.core.logging import apply_level, get_logger
from cadenza.core.models.app import CONFIG_PATH_ENV, CadenzaConfig, load_config
from cadenza.core.models.autoscaler import AutoscalerConfig
from cadenza.core.models.task import TaskDescriptor
from cadenza.core.queue.postgres import PostgresQueue
from cadenza.core.runtime.task_runtime import TaskRuntime
from cadenza.core.task import TaskDefinition, coerce_task
from cadenza.core.utils.imports import (
    is_file_path,
    locate,
    parse_locator,
    setup_sys_path_from_cwd,
)

LOGLEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def setup_logging(loglevel: str) -> None:
    """Configure logging level globally."""
    apply_level(getattr(logging, loglevel.upper(), logging.INFO))


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Command-line values that win over the config file, now and on every reload."""
    return {'loglevel': args.loglevel} if args.loglevel else {}


def _load(args: argparse.Namespace) -> CadenzaConfig:
    """Load configuration; --config is exported so child processes see it too."""
    if args.config:
        os.environ[CONFIG_PATH_ENV] = os.path.realpath(args.config)
    config = load_config()
    overrides = _overrides(args)
    if overrides:
        config = config.model_copy(update=overrides)
    return config


def _normalize_locator(locator: str) -> str:
    """Make file-path locators absolute so they resolve the same in children."""
    module_path, attr = parse_locator(locator)
    if is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        return f'{os.path.realpath(module_path)}:{attr}'
    return locator


def discover_task(locator: str) -> TaskDefinition:
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    definition = coerce_task(locate(locator), locator)
    logger.info(f"Discovered task '{definition.name}' from {locator}")
    return definition


def _parse_body(body: str) -> Any:
    try:
        return json.loads(body)
    except ValueError:
        return body


def run_command(args: argparse.Namespace) -> int:
    """Handle run command."""
    logger = get_logger('cli')

    config = _load(args)
    setup_logging(config.loglevel)
    holder = ConfigHolder(config, overrides=_overrides(args))
    config.log_config(logger)

    definition = discover_task(_normalize_locator(args.locator))
    queue = PostgresQueue(config.broker, definition.descriptor, resilience=config.resilience)
    runtime = TaskRuntime(
        definition,
        queue,
        config=holder,
        exit_on_idle=args.exit_on_idle,
    )
    return runtime.start()


def autoscale_command(args: argparse.Namespace) -> int:
    """Handle autoscale command."""
    logger = get_logger('cli')

    config = _load(args)
    overrides = {
        key: value
        for key, value in (
            ('max_workers', args.max_workers),
            ('sample_size', args.sample_size),
            ('tick_interval', args.tick_interval),
            ('throttle_interval', args.throttle_interval),
        )
        if value is not None
    }
    if overrides:
        try:
            autoscaler_config = AutoscalerConfig.model_validate(
                {**config.autoscaler.model_dump(), **overrides}
            )
        except ValidationError as e:
            raise ConfigurationError(
                message='invalid autoscaler options',
                code=ErrorCode.CONFIG_INVALID_AUTOSCALER,
                notes=[err['msg'] for err in e.errors()],
            ) from e
        config = config.model_copy(update={'autoscaler': autoscaler_config})

    setup_logging(config.loglevel)
    config.log_config(logger)

    locator = _normalize_locator(args.locator)
    definition = discover_task(locator)
    definition.descriptor.ensure_runnable()

    sys_path_roots = [os.getcwd()]
    spawner = MultiprocessingSpawner(
        locator,
        config.model_dump(mode='json'),
        sys_path_roots=sys_path_roots,
        overrides=_overrides(args),
    )
    queue = PostgresQueue(config.broker, definition.descriptor, resilience=config.resilience)
    scaler = Autoscaler(definition.descriptor, queue, spawner, config.autoscaler)

    async def run_autoscaler() -> None:
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info('Received interrupt signal, stopping workers...')
            scaler.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                pass

        await scaler.run_forever()

    try:
        asyncio.run(run_autoscaler())
    except KeyboardInterrupt:
        logger.info('Autoscaler interrupted by user')
    return ExitCode.OK


def publish_command(args: argparse.Namespace) -> int:
    """Handle publish command."""
    logger = get_logger('cli')

    config = _load(args)
    setup_logging(config.loglevel)

    try:
        payload = encode_payload(_parse_body(args.body), args.content_type)
    except PayloadError as e:
        raise ConfigurationError(
            message='cannot encode message body',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=[str(e)],
        ) from e

    headers: dict[str, Any] = {}
    for item in args.header or ():
        key, sep, value = item.partition('=')
        if not sep:
            raise ConfigurationError(
                message=f'invalid header {item!r}',
                code=ErrorCode.CLI_INVALID_ARGS,
                help_text='use --header name=value',
            )
        headers[key] = value

    queue = PostgresQueue(config.broker, TaskDescriptor(name='cadenza.publisher'))

    async def publish() -> int:
        try:
            return await queue.publish(
                args.routing_key,
                payload,
                args.content_type,
                headers,
                exchange=args.exchange,
            )
        finally:
            await queue.close()

    count = asyncio.run(publish())
    logger.info(f'Published {len(payload)} bytes to {count} queue(s) via {args.routing_key!r}')
    return ExitCode.OK if count else ExitCode.FAILURE


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '-c',
        '--config',
        help=f'YAML config file (default: ${CONFIG_PATH_ENV})',
    )
    parser.add_argument(
        '--loglevel',
        choices=LOGLEVELS,
        default=None,
        type=str.upper,
        help='Logging level (default: from config, INFO)',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='cadenza',
        description='cadenza - message-driven task workers with autoscaling',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run one worker in the foreground
  cadenza run myapp.tasks:audit

  # Using file path
  cadenza run myapp/tasks.py:audit --exit-on-idle

  # Scale workers with the backlog
  cadenza autoscale myapp.tasks:audit --max-workers 4

  # Publish a test message
  cadenza publish orders.created '{"id": 1}'
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser('run', help='Run one task runtime in the foreground')
    run_parser.add_argument('locator', help='Task locator (e.g., myapp.tasks:audit)')
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        '--exit-on-idle',
        action='store_true',
        help="Exit once idle for longer than the task's idle_timeout",
    )

    autoscale_parser = subparsers.add_parser(
        'autoscale', help='Supervise a pool of workers sized to the backlog'
    )
    autoscale_parser.add_argument('locator', help='Task locator (e.g., myapp.tasks:audit)')
    _add_common_arguments(autoscale_parser)
    autoscale_parser.add_argument('--max-workers', type=int, help='Worker ceiling')
    autoscale_parser.add_argument('--sample-size', type=int, help='Trend window size')
    autoscale_parser.add_argument('--tick-interval', type=float, help='Seconds between ticks')
    autoscale_parser.add_argument(
        '--throttle-interval', type=float, help='Base seconds between worker starts'
    )

    publish_parser = subparsers.add_parser('publish', help='Publish one message')
    publish_parser.add_argument('routing_key', help='Routing key (e.g., orders.created)')
    publish_parser.add_argument('body', help='Message body; JSON is parsed before encoding')
    _add_common_arguments(publish_parser)
    publish_parser.add_argument(
        '--content-type',
        default=JSON,
        help=f'Content type (default: {JSON})',
    )
    publish_parser.add_argument('--exchange', help='Exchange (default: broker.exchange)')
    publish_parser.add_argument(
        '-H', '--header', action='append', help='Header as name=value (repeatable)'
    )
    return parser


COMMANDS = {
    'run': run_command,
    'autoscale': autoscale_command,
    'publish': publish_command,
}


def main(argv: Optional[list[str]] = None) -> None:
    """Main CLI entry point."""
    load_dotenv()
    logger = get_logger('cli')

    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(ExitCode.FAILURE)

    try:
        code = COMMANDS[args.command](args)
    except CadenzaError as e:
        logger.error(str(e))
        sys.exit(ExitCode.SOFTWARE)
    except KeyboardInterrupt:
        logger.info('Interrupted by user')
        sys.exit(ExitCode.OK)
    sys.exit(int(code))


if __name__ == '__main__':
    main()
