"""eth_governance package root.

- Replay pending Safe multisig governance transactions on a forked chain,
  see :py:mod:`eth_governance.safe.replay`

- Verify deterministic factory deployments against a deployment manifest,
  see :py:mod:`eth_governance.verification.verifier`
"""

import sys


#: Minimum required Python version to run this package
MIN_PYTHON_VERSION = (3, 10)


def _check_python_version():
    """Abort on import, before any syntax newer than the interpreter is hit."""

    if sys.version_info < MIN_PYTHON_VERSION:
        raise RuntimeError(f"eth-governance needs Python {MIN_PYTHON_VERSION[0]}.{MIN_PYTHON_VERSION[1]} or later")


_check_python_version()
