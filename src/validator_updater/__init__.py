"""
Validator Updater: keeps the validator VM in step with the platform.

Polls the platform control plane for the desired compose configuration,
fingerprints it, and only when it drifts from what is running replaces
the VM on the local dstack VM manager, handing it freshly encrypted
secrets from the operator's local config.
"""

import os

__version__ = "0.1.0"

CONFIG_PATH = os.environ.get(
    "VALIDATOR_UPDATER_CONFIG", "/etc/platform-validator/config.json"
)
