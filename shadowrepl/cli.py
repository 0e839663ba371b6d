#!/usr/bin/env python3
"""
CLI Tool for shadowrepl

Applies decoded change records to the destination database through the
shadow-table ordering protocol, and replays the dead-letter queue.
"""

import argparse
import signal
import sys
from typing import List, Optional

from .exceptions import ShadowReplError
from .models.config import RunMode
from .pipeline_service import PipelineService
from .services.record_reader import read_records
from .services.schema_mapper import build_schema_mapper
from .utils.logger import setup_logging, get_logger


class MigrationCLI:
    """CLI for running the migration pipeline"""

    def __init__(self):
        self.logger = get_logger()
        self.pipeline: Optional[PipelineService] = None
        self._shutdown_requested = False

    def _setup_signal_handlers(self) -> None:
        """Forward SIGINT/SIGTERM to the pipeline for a graceful shutdown"""
        def signal_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            self.logger.info("Received signal, initiating graceful shutdown", signal=signal_name)
            self._shutdown_requested = True
            if self.pipeline is not None:
                self.pipeline.request_shutdown()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def run(self, config_path: str, inputs: List[str], keep_running: bool = False) -> None:
        """Apply change records read from ``inputs``"""
        self.pipeline = PipelineService.from_config_file(config_path)
        if not self.pipeline.config.is_regular_mode:
            raise ShadowReplError("Configuration run_mode is retry_only, use the retry-dlq command")
        self._setup_signal_handlers()
        self.pipeline.initialize()
        stats = self.pipeline.run(read_records(inputs or ['-']), keep_running=keep_running)
        self.logger.info("Run finished", **stats)

    def retry_dlq(self, config_path: str) -> None:
        """Replay the severe dead-letter store once"""
        self.pipeline = PipelineService.from_config_file(config_path)
        self.pipeline.config.run_mode = RunMode.RETRY_ONLY
        self._setup_signal_handlers()
        stats = self.pipeline.run_retry_only()
        self.logger.info("Dead-letter replay finished", **stats)

    def validate(self, config_path: str) -> None:
        """Load the configuration, reach the destination and build the schema mapping"""
        pipeline = PipelineService.from_config_file(config_path)
        try:
            if not pipeline.database_service.test_connection():
                raise ShadowReplError("Destination connection test failed")
            config = pipeline.config
            schema = pipeline.database_service.read_destination_schema(
                config.destination.database, exclude_prefix=config.shadow_table_prefix)
            build_schema_mapper(config.schema, schema)
            pipeline.transform_service.load_transformation_context(config.transformation_context_file)
            pipeline.transform_service.load_sharding_context(config.sharding_context_file)
            pipeline.transform_service.load_custom_transformation(
                config.custom_transformation, pipeline.config_dir)
        finally:
            pipeline.database_service.close_all_connections()
        self.logger.info("Configuration is valid", config_path=config_path, tables=len(schema.tables))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='shadowrepl', description='Ordered change-event migration CLI')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    def add_common(subparser):
        subparser.add_argument('config', help='Path to configuration file')
        subparser.add_argument('--log-level', default='INFO', help='Logging level')
        subparser.add_argument('--log-format', default='json', choices=['json', 'console'], help='Logging format')

    run_parser = subparsers.add_parser('run', help='Apply change records')
    add_common(run_parser)
    run_parser.add_argument('--input', '-i', action='append', dest='inputs', default=[],
                            help="JSON-lines file or directory of change records, '-' for stdin (repeatable)")
    run_parser.add_argument('--keep-running', action='store_true',
                            help='Keep retrying dead-letter entries after the input is exhausted')

    retry_parser = subparsers.add_parser('retry-dlq', help='Replay the severe dead-letter store')
    add_common(retry_parser)

    validate_parser = subparsers.add_parser('validate', help='Validate configuration and destination schema')
    add_common(validate_parser)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logging(level=args.log_level, format_type=args.log_format, stream=sys.stderr)
    logger = get_logger()
    cli = MigrationCLI()

    try:
        if args.command == 'run':
            cli.run(args.config, args.inputs, keep_running=args.keep_running)
        elif args.command == 'retry-dlq':
            cli.retry_dlq(args.config)
        elif args.command == 'validate':
            cli.validate(args.config)
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
        return 0
    except ShadowReplError as e:
        logger.error("Migration error", error=str(e), error_type=type(e).__name__)
        return 1
    except OSError as e:
        logger.error("I/O error", error=str(e))
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
