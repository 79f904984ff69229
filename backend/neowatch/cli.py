"""Run a single pipeline invocation outside the web server."""
import argparse
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from neowatch.config import LOG_FILE, LOG_LEVEL
from neowatch.db import init_db
from neowatch.logging_setup import setup_logging
from neowatch.services.notifications import LogGateway
from neowatch.services.pipeline import PipelineOrchestrator

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Near-Earth object risk pipeline')
    parser.add_argument(
        '--mode',
        choices=['today', 'week', 'sweep', 'purge'],
        default='today',
        help='Pipeline to run once (default: today)',
    )
    parser.add_argument(
        '--days',
        type=int,
        default=1,
        help='Lookahead in days for --mode sweep (default: 1)',
    )
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging')
    parser.add_argument('--log-file', default=LOG_FILE, help='Also write logs to this file')
    return parser


def run(orchestrator: PipelineOrchestrator, mode: str, days: int = 1):
    if mode == 'today':
        return orchestrator.run_daily()
    if mode == 'week':
        return orchestrator.run_weekly()
    if mode == 'sweep':
        return orchestrator.run_alert_sweep(days_ahead=days)
    if mode == 'purge':
        return orchestrator.purge_expired()
    raise ValueError(f'unknown mode {mode!r}')


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(LOG_LEVEL, args.log_file, verbose=args.verbose)

    try:
        init_db()
    except SQLAlchemyError as exc:
        logger.error('Database unavailable: %s', exc)
        return 1

    orchestrator = PipelineOrchestrator(gateway=LogGateway(), max_workers=1)
    try:
        result = run(orchestrator, args.mode, args.days)
    except KeyboardInterrupt:
        logger.info('Interrupted by user')
        return 130
    except Exception as exc:
        logger.exception('Error during %s run: %s', args.mode, exc)
        return 1
    finally:
        orchestrator.shutdown(wait=True)

    if result is None:
        logger.warning('Pipeline %s was already running; nothing done', args.mode)
    elif hasattr(result, 'model_dump_json'):
        logger.info('Result: %s', result.model_dump_json())
    else:
        logger.info('Result: %s', result)
    return 0


if __name__ == '__main__':
    sys.exit(main())
