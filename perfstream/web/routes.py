"""
Flask routes for the perfstream HTTP API.
"""

import json
import threading
import time
from collections import deque
from typing import Any, Dict, List, Optional

from flask import Blueprint, Response, jsonify, request

from ..core import (
    InstallationFailed, PollingAlreadyActive, Sample, UnsupportedPlatform,
    CommandFailed, get_calibration, start_polling
)

# Will be set by app.py
session_manager = None
profile_manager = None

_feeds: Dict[str, 'SampleFeed'] = {}
_feeds_lock = threading.Lock()

web = Blueprint('web', __name__)


class SampleFeed:
    """Recent samples of one polling session, numbered for incremental reads."""

    def __init__(self, maxlen: int = 500):
        self._samples = deque(maxlen=maxlen)
        self._seq = 0
        self._lock = threading.Lock()
        self.pid_changed_to: Optional[str] = None

    def add_sample(self, sample: Sample):
        with self._lock:
            self._seq += 1
            self._samples.append({'seq': self._seq, **sample.to_dict()})

    def set_pid_changed(self, pid: Optional[str]):
        self.pid_changed_to = pid

    def get_samples(self, after_seq: int = 0) -> List[Dict[str, Any]]:
        with self._lock:
            return [s for s in self._samples if s['seq'] > after_seq]


def init_routes(sess_mgr, prof_mgr):
    """Initialize routes with session and profile managers."""
    global session_manager, profile_manager
    session_manager = sess_mgr
    profile_manager = prof_mgr


def _get_session(name):
    session = session_manager.get_session(name)
    if not session:
        return None, (jsonify({'success': False, 'error': 'Profile not found'}), 404)
    return session, None


def _install_error(e: Exception):
    if isinstance(e, UnsupportedPlatform):
        return jsonify({'success': False, 'error': str(e)}), 400
    return jsonify({'success': False, 'error': str(e)}), 500


# ============ Profiles ============

@web.route('/api/profiles')
def profiles_list():
    """List all device profiles."""
    return jsonify({'profiles': profile_manager.list_profiles()})


# ============ Installation ============

@web.route('/api/devices/<name>/install', methods=['POST'])
@web.route('/api/devices/<name>/calibration')
def device_calibration(name):
    """Install the agent if needed and return the calibration constants."""
    session, error = _get_session(name)
    if error:
        return error

    try:
        calibration = get_calibration(session)
    except (UnsupportedPlatform, InstallationFailed) as e:
        return _install_error(e)

    return jsonify({'success': True, 'calibration': calibration.to_dict()})


# ============ Polling ============

@web.route('/api/devices/<name>/polling', methods=['POST'])
def polling_start(name):
    """Start polling a process."""
    session, error = _get_session(name)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    pid = data.get('pid')
    if not pid:
        return jsonify({'success': False, 'error': 'No pid specified'}), 400

    feed = SampleFeed()
    try:
        handle = start_polling(
            session, str(pid),
            on_sample=feed.add_sample,
            on_pid_changed=feed.set_pid_changed,
            interval_ms=data.get('interval_ms')
        )
    except PollingAlreadyActive as e:
        return jsonify({'success': False, 'error': str(e)}), 409
    except (UnsupportedPlatform, InstallationFailed) as e:
        return _install_error(e)
    except CommandFailed as e:
        return jsonify({'success': False, 'error': str(e)}), 500

    with _feeds_lock:
        _feeds[name] = feed

    return jsonify({'success': True, 'pid': handle.pid, 'state': handle.state.value})


@web.route('/api/devices/<name>/polling', methods=['DELETE'])
def polling_stop(name):
    """Stop the active polling session."""
    session, error = _get_session(name)
    if error:
        return error

    handle = session.active_handle
    if handle is None:
        return jsonify({'success': False, 'error': 'Not polling'}), 404

    handle.stop()
    return jsonify({'success': True})


@web.route('/api/devices/<name>/samples')
def polling_samples(name):
    """Get samples, optionally after a sequence number (for polling)."""
    with _feeds_lock:
        feed = _feeds.get(name)
    if feed is None:
        return jsonify({'success': False, 'error': 'No samples for this device'}), 404

    after_seq = request.args.get('after', 0, type=int)
    session = session_manager.get_session(name)
    return jsonify({
        'samples': feed.get_samples(after_seq),
        'pid_changed_to': feed.pid_changed_to,
        'polling': bool(session and session.active_handle)
    })


@web.route('/api/devices/<name>/samples/stream')
def polling_samples_stream(name):
    """Server-sent events stream of samples."""
    with _feeds_lock:
        feed = _feeds.get(name)
    if feed is None:
        return jsonify({'success': False, 'error': 'No samples for this device'}), 404

    last_seq = request.args.get('after', 0, type=int)

    def generate():
        seq = last_seq
        while True:
            for sample in feed.get_samples(seq):
                seq = sample['seq']
                yield f"data: {json.dumps(sample)}\n\n"

            session = session_manager.get_session(name)
            handle = session.active_handle if session else None
            if handle is None:
                return
            if not handle.is_streaming:
                # Agent exited on its own; flush what the dispatcher still holds
                handle.wait(1.0)
                for sample in feed.get_samples(seq):
                    seq = sample['seq']
                    yield f"data: {json.dumps(sample)}\n\n"
                return
            time.sleep(0.5)

    return Response(generate(), mimetype='text/event-stream')
