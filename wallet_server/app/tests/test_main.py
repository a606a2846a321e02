"""
Application Import Tests

Each entry module must import on its own in a clean interpreter, the way
uvicorn loads wallet_server.app.main:app.
"""

import os
import subprocess
import sys
from pathlib import Path

import pytest

from conftest import TEST_ENV
from wallet_server.app.main import create_app


PROJECT_ROOT = Path(__file__).resolve().parents[3]


@pytest.mark.parametrize(
    "module",
    [
        "wallet_server.app.main",
        "wallet_server.app.dependencies",
        "wallet_server.app.oidc.routes",
        "wallet_server.app.oidc",
    ],
)
def test_module_imports_in_fresh_interpreter(module):
    env = dict(os.environ)
    env.update(TEST_ENV)

    result = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        cwd=PROJECT_ROOT,
        env=env,
        capture_output=True,
        text=True,
    )

    assert result.returncode == 0, result.stderr


def test_create_app_registers_routes(settings):
    paths = {route.path for route in create_app(settings).routes}

    assert {"/login", "/callback", "/userinfo", "/logout", "/healthcheck"} <= paths
