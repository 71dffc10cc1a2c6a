#!/usr/bin/env python3
"""
perfstream - continuous performance measures from Android devices

Installs the measurement agent on a device, keeps atrace running alongside it
and streams one structured sample per polling interval.

Usage:
    perfstream serve [--host HOST] [--port PORT] [--profiles-dir DIR]
    perfstream install --profile NAME
    perfstream poll --profile NAME --pid PID [--interval-ms N] [--count N]
"""

import argparse
import logging
import os
import sys
import threading

from flask import Flask

from .core import (
    PerfStreamError, ProfileManager, SessionManager, get_calibration,
    setup_logger, start_polling
)
from .web.routes import web, init_routes

logger = logging.getLogger(__name__)


def default_profiles_dir():
    """Profiles live in ./profiles relative to where perfstream is run."""
    return os.path.join(os.getcwd(), 'profiles')


def create_app(profiles_dir: str = None) -> Flask:
    """Create and configure the Flask application."""
    if profiles_dir is None:
        profiles_dir = default_profiles_dir()

    profile_manager = ProfileManager(profiles_dir)
    session_manager = SessionManager(profile_manager)

    app = Flask(__name__)
    app.config['PROFILES_DIR'] = profiles_dir

    init_routes(session_manager, profile_manager)
    app.register_blueprint(web)

    app.profile_manager = profile_manager
    app.session_manager = session_manager

    return app


def _get_session(args):
    profile_manager = ProfileManager(args.profiles_dir or default_profiles_dir())
    session_manager = SessionManager(profile_manager)
    session = session_manager.get_session(args.profile)
    if not session:
        raise SystemExit(f"Profile not found: {args.profile}")
    return session_manager, session


def cmd_serve(args):
    app = create_app(profiles_dir=args.profiles_dir)

    print(f"""
perfstream API:  http://{args.host}:{args.port}
Profiles:        {app.config['PROFILES_DIR']}
Press Ctrl+C to stop
""")

    try:
        app.run(host=args.host, port=args.port, debug=args.debug, threaded=True)
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        app.session_manager.close_all()
    return 0


def cmd_install(args):
    session_manager, session = _get_session(args)
    try:
        calibration = get_calibration(session)
    finally:
        session_manager.close_all()

    print(f"CPU clock tick: {calibration.clock_tick}")
    print(f"RAM page size:  {calibration.page_size}")
    return 0


def cmd_poll(args):
    session_manager, session = _get_session(args)
    done = threading.Event()
    received = 0

    def on_sample(sample):
        nonlocal received
        print(sample.to_json(), flush=True)
        received += 1
        if args.count and received >= args.count:
            done.set()

    def on_pid_changed(pid):
        logger.warning("Process %s closed (now %s)", args.pid, pid)
        done.set()

    try:
        handle = start_polling(
            session, args.pid,
            on_sample=on_sample,
            on_pid_changed=on_pid_changed,
            interval_ms=args.interval_ms
        )
        try:
            while not done.wait(0.5):
                if not handle.is_streaming:
                    # Let the dispatcher deliver what was already read
                    handle.wait(1.0)
                    break
        except KeyboardInterrupt:
            pass
        finally:
            handle.stop()
    finally:
        session_manager.close_all()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='perfstream - continuous performance measures from Android devices',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    perfstream serve --port 8080
    perfstream install --profile pixel-7
    perfstream poll --profile pixel-7 --pid 12345 --count 20
        """
    )
    parser.add_argument(
        '--profiles-dir',
        help='Directory for device profiles (default: ./profiles)'
    )
    parser.add_argument(
        '--log-file',
        help='Also write logs to this file'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    serve = subparsers.add_parser('serve', help='Run the HTTP API')
    serve.add_argument(
        '--host',
        default='127.0.0.1',
        help='Host to bind to (default: 127.0.0.1 for localhost only)'
    )
    serve.add_argument(
        '--port',
        type=int,
        default=5000,
        help='Port to bind to (default: 5000)'
    )
    serve.set_defaults(func=cmd_serve)

    install = subparsers.add_parser('install', help='Install the agent and print calibration')
    install.add_argument('--profile', required=True, help='Device profile name')
    install.set_defaults(func=cmd_install)

    poll = subparsers.add_parser('poll', help='Stream samples for a process as JSON lines')
    poll.add_argument('--profile', required=True, help='Device profile name')
    poll.add_argument('--pid', required=True, help='Process id to measure')
    poll.add_argument('--interval-ms', type=int, help='Polling interval (default: from profile)')
    poll.add_argument('--count', type=int, default=0, help='Stop after N samples (default: never)')
    poll.set_defaults(func=cmd_poll)

    return parser


def main(argv=None):
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logger("perfstream", log_file=args.log_file,
                 level=logging.DEBUG if args.debug else logging.INFO)

    try:
        return args.func(args)
    except PerfStreamError as e:
        logger.error(str(e))
        return 1


if __name__ == '__main__':
    sys.exit(main())
