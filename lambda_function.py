"""AWS Lambda handler and command line entry point for the studio sync jobs."""
import argparse
import json
import logging
import os
import sys
import time
from typing import Any, Dict, List, Optional

from config import ConfigError
from jobs import (
    clear_reservations_view,
    customers_to_webhook,
    find_second_class,
    generate_measurements_sheet,
    import_instructor_ratings,
    new_people_today,
    process_class,
    resolve_class_id,
    send_reminders,
    sync_bike_measurements,
    sync_contact_emails,
    update_class_checkins,
)
from jobs.base import EXIT_CONFIG, run_job, setup_logging

JOBS = {
    module.JOB_NAME: module
    for module in (
        import_instructor_ratings,
        resolve_class_id,
        send_reminders,
        update_class_checkins,
        customers_to_webhook,
        sync_contact_emails,
        clear_reservations_view,
        new_people_today,
        find_second_class,
        process_class,
        sync_bike_measurements,
        generate_measurements_sheet,
    )
}


def _error_response(status_code: int, message: str, error: Exception, duration: float) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'body': json.dumps({
            'message': message,
            'error': str(error),
            'error_type': type(error).__name__,
            'duration_seconds': round(duration, 2)
        })
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler: run the job named in the event.

    Args:
        event: Payload such as {"job": "send_reminders", "args": ["rec123"]}
            (EventBridge rules set it as constant input)
        context: Lambda context object

    Returns:
        Response dict with statusCode and the job's counters
    """
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    logger = logging.getLogger(__name__)

    job_name = (event or {}).get('job') or os.environ.get('JOB_NAME', '')
    args = [str(arg) for arg in (event or {}).get('args') or []]
    module = JOBS.get(job_name)
    if module is None:
        logger.error(f"Unknown job {job_name!r}", extra={'job': job_name})
        return {
            'statusCode': 400,
            'body': json.dumps({
                'message': f"Unknown job {job_name!r}",
                'jobs': sorted(JOBS)
            })
        }

    start_time = time.time()
    logger.info(f"Lambda execution started", extra={'job': job_name, 'job_args': args})

    try:
        result = module.execute(os.environ, args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}", extra={'job': job_name})
        return _error_response(400, 'Invalid configuration', e, time.time() - start_time)
    except Exception as e:
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'job': job_name,
                'duration_seconds': round(time.time() - start_time, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _error_response(500, 'Job failed', e, time.time() - start_time)

    duration = time.time() - start_time
    logger.info(
        result.summary(),
        extra={
            'job': job_name,
            'counts': result.counts,
            'duration_seconds': round(duration, 2)
        }
    )

    failed = getattr(module, 'FAIL_ON_RECORD_ERRORS', False) and result.failed
    return {
        'statusCode': 500 if failed else 200,
        'body': json.dumps({
            'message': 'Job finished with record errors' if failed else 'Job completed successfully',
            'job': job_name,
            'statistics': {
                **result.counts,
                'duration_seconds': round(duration, 2)
            },
            'issues': result.issues
        })
    }


def main(argv: Optional[List[str]] = None) -> int:
    """studio-sync <job> [args...]"""
    parser = argparse.ArgumentParser(prog='studio-sync', description='Run one studio sync job.')
    parser.add_argument('job', choices=sorted(JOBS), help='Job to run')
    parser.add_argument('args', nargs=argparse.REMAINDER, help='Positional job arguments')
    try:
        parsed = parser.parse_args(sys.argv[1:] if argv is None else argv)
    except SystemExit as e:
        return EXIT_CONFIG if e.code else 0

    module = JOBS[parsed.job]
    return run_job(
        parsed.job,
        module.execute,
        parsed.args,
        fail_on_record_errors=getattr(module, 'FAIL_ON_RECORD_ERRORS', False),
    )


if __name__ == '__main__':
    sys.exit(main())
