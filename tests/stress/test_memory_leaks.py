# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import gc
import os
import sys
import tracemalloc

import psutil
import pytest

from convoy.DRIVERS.process_driver import ProcessDriver
from convoy.MANAGERS.service_orchestrator import ServiceOrchestrator
from convoy.MODELS.session_state import SessionState


def test_orchestrator_memory_leak(web_stack, fake_driver):
    """
    Checks for memory leaks when repeatedly running up and down on fresh sessions.
    """
    tracemalloc.start()
    try:
        # Warm up caches before the baseline
        orchestrator = ServiceOrchestrator(web_stack, fake_driver, poll_interval=0.01)
        session = SessionState(project=web_stack.name)
        orchestrator.up(session)
        orchestrator.down(session)
        fake_driver.calls.clear()

        gc.collect()
        snapshot1 = tracemalloc.take_snapshot()

        for _ in range(100):
            orchestrator = ServiceOrchestrator(web_stack, fake_driver, poll_interval=0.01)
            session = SessionState(project=web_stack.name)
            orchestrator.up(session)
            orchestrator.down(session)
            fake_driver.calls.clear()
            del orchestrator
            del session

        gc.collect()
        snapshot2 = tracemalloc.take_snapshot()
    finally:
        tracemalloc.stop()

    top_stats = snapshot2.compare_to(snapshot1, "lineno")

    # 1 MB is a very generous threshold for 100 up/down cycles
    total_diff = sum(stat.size_diff for stat in top_stats)
    assert total_diff < 1024 * 1024


@pytest.mark.skipif(not hasattr(psutil.Process, "num_fds"), reason="needs file descriptor counts")
def test_process_driver_leak(build_manifest, tmp_path):
    """
    Checks that starting and stopping processes does not leave log files or pipes open.
    """
    services = {
        f"svc_{i}": {'image': 'img', 'command': [sys.executable, '-c', 'import time; time.sleep(30)']}
        for i in range(20)
    }
    manifest = build_manifest(services)
    driver = ProcessDriver(manifest, base_dir=str(tmp_path))
    orchestrator = ServiceOrchestrator(manifest, driver, poll_interval=0.05)

    process = psutil.Process(os.getpid())
    initial_fds = process.num_fds()

    for _ in range(3):
        session = SessionState(project=manifest.name)
        orchestrator.up(session)
        report = orchestrator.down(session, timeout=5)
        assert report.ok

    gc.collect()
    assert process.num_fds() <= initial_fds + 5
