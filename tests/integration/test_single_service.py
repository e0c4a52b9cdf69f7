import os
import sys
import time

from convoy.DRIVERS.process_driver import ProcessDriver
from convoy.MANAGERS.service_orchestrator import ServiceOrchestrator
from convoy.MODELS.session_state import ServiceStatus, SessionState
from convoy.PARSERS.manifest_parser import ManifestParser


def test_single_service_lifecycle(tmp_path):
    # Setup
    dummy_script = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dummy_service.py")
    manifest = ManifestParser(context={}).parse_data({
        'name': 'single',
        'services': {
            'test-service': {
                'image': 'python:3.12',
                'command': [sys.executable, dummy_script],
                'environment': {'APP_ENV': 'dev', 'PYTHONUNBUFFERED': '1'},
                'stop_grace_period': '2s',
            },
        },
    }, base_dir=str(tmp_path))

    orchestrator = ServiceOrchestrator(manifest, ProcessDriver(manifest, base_dir=str(tmp_path)), poll_interval=0.05)
    session = SessionState(project='single')

    # Start
    orchestrator.up(session)
    assert session.status('test-service') == ServiceStatus.RUNNING

    # Pause and resume
    orchestrator.stop(session)
    assert session.status('test-service') == ServiceStatus.STOPPED
    orchestrator.start(session)
    assert session.status('test-service') == ServiceStatus.RUNNING

    # Stop
    orchestrator.down(session)
    assert session.status('test-service') == ServiceStatus.STOPPED

    # Check logs
    log_file = tmp_path / ".convoy" / "logs" / "test-service.log"
    deadline = time.monotonic() + 5
    while "APP_ENV: dev" not in log_file.read_text() and time.monotonic() < deadline:
        time.sleep(0.05)
    content = log_file.read_text()
    assert "Dummy service starting..." in content
    assert "APP_ENV: dev" in content
