"""
Build version reported by /health and the vforge_info metric.

Set VFORGE_CODE_VERSION (and optionally VFORGE_BUILD_TIMESTAMP) at image
build time. Local checkouts fall back to the current git commit.
"""

import os
import subprocess

CODE_VERSION = os.environ.get("VFORGE_CODE_VERSION", "dev")

BUILD_TIMESTAMP = os.environ.get("VFORGE_BUILD_TIMESTAMP", "")

if CODE_VERSION == "dev" and not os.environ.get("VFORGE_TEST_MODE"):
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
            cwd=os.path.dirname(os.path.abspath(__file__)),
        )
        if result.returncode == 0 and result.stdout.strip():
            CODE_VERSION = result.stdout.strip()
    except (OSError, subprocess.SubprocessError):
        pass  # keep "dev"


def get_version_info() -> dict:
    return {
        "code_version": CODE_VERSION,
        "build_timestamp": BUILD_TIMESTAMP or "unknown",
    }
