import os
import time

import pytest

from convoy.DRIVERS.process_driver import ProcessDriver
from convoy.errors import ManifestError
from convoy.MANAGERS.network_manager import NetworkManager
from convoy.PARSERS.manifest_parser import ManifestParser


def test_command_injection_attempt(build_manifest, tmp_path):
    """
    Shell operators in a command are passed to the program as literal arguments.
    """
    injected_file = tmp_path / "injected.txt"
    manifest = build_manifest({
        'echo': {'image': 'x', 'command': f"echo hello ; touch {injected_file}"},
    })
    driver = ProcessDriver(manifest, base_dir=str(tmp_path))
    service = manifest.services['echo']
    handle = driver.create_container(manifest, service, NetworkManager(manifest).bindings(service))
    try:
        driver.start(handle)
        time.sleep(1)
    finally:
        driver.remove(handle, force=True)

    assert not injected_file.exists(), "Command injection successful! Security vulnerability found."
    assert "hello ; touch" in (tmp_path / ".convoy" / "logs" / "echo.log").read_text()


def test_interpolation_is_not_recursive(tmp_path):
    """
    Values substituted into the manifest are not interpolated a second time.
    """
    manifest = ManifestParser(context={'PAYLOAD': '${SECRET}', 'SECRET': 'leaked'}).parse_data(
        {'name': 'sec', 'services': {'web': {'image': 'x', 'environment': {'V': '${PAYLOAD}'}}}},
        base_dir=str(tmp_path),
    )
    assert manifest.services['web'].environment['V'] == '${SECRET}'


def test_missing_manifest_raises():
    with pytest.raises(ManifestError, match="cannot read manifest"):
        ManifestParser().parse(os.path.join("non_existent_dir_12345", "convoy.yml"))
