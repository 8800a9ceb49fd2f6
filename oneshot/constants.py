"""Centralized constants and enums for oneshot.

All magic strings, state codes and timing defaults are defined here
to ensure consistency throughout the codebase.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

# =============================================================================
# AWS Resource Tags
# =============================================================================


class OneshotTag(StrEnum):
    """AWS resource tag keys used by oneshot."""

    JOB = "oneshot:job"
    MANAGED = "oneshot:managed"


# =============================================================================
# EC2 Instance States
# =============================================================================


class InstanceState(StrEnum):
    """EC2 instance state names."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"

    @property
    def code(self) -> int:
        return _STATE_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> InstanceState:
        """Map an EC2 state code to its state.

        Only the low byte is meaningful; the high byte is reserved by AWS.
        """
        low = code & 0xFF
        for state, value in _STATE_CODES.items():
            if value == low:
                return state
        raise ValueError(f"Unknown EC2 instance state code: {code}")


_STATE_CODES: Final[dict[InstanceState, int]] = {
    InstanceState.PENDING: 0,
    InstanceState.RUNNING: 16,
    InstanceState.SHUTTING_DOWN: 32,
    InstanceState.TERMINATED: 48,
    InstanceState.STOPPING: 64,
    InstanceState.STOPPED: 80,
}

# Termination may only be issued from these states.
TERMINABLE_STATES: Final = frozenset({
    InstanceState.PENDING,
    InstanceState.RUNNING,
    InstanceState.STOPPING,
    InstanceState.STOPPED,
})

# A booting instance in one of these will never become reachable.
BOOT_FAILURE_STATES: Final = frozenset({
    InstanceState.SHUTTING_DOWN,
    InstanceState.TERMINATED,
    InstanceState.STOPPING,
    InstanceState.STOPPED,
})


# =============================================================================
# AWS Defaults
# =============================================================================

DEFAULT_REGION: Final = "eu-central-1"
DEFAULT_INSTANCE_TYPE: Final = "t2.micro"
DEFAULT_USERNAME: Final = "ec2-user"
DEFAULT_ACCESS_RANGE: Final = "0.0.0.0/0"
AL2023_IMAGE_PARAMETER: Final = (
    "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-6.1-x86_64"
)
SSH_PORT: Final = 22
AWS_CLI_URL: Final = "https://awscli.amazonaws.com/awscli-exe-linux-x86_64.zip"


# =============================================================================
# Timing (seconds)
# =============================================================================

POLL_INTERVAL: Final = 2.0
BOOT_TIMEOUT: Final = 600.0
SHUTDOWN_TIMEOUT: Final = 600.0
SSH_SETTLE_DELAY: Final = 10.0
SSH_CONNECT_TIMEOUT: Final = 10.0
SSH_CONNECT_ATTEMPTS: Final = 5
PROMPT_INTERVAL: Final = 1.0
PROMPT_ATTEMPTS: Final = 5
PROGRAM_ATTEMPTS: Final = 3600
SYNC_ATTEMPTS: Final = 300
INSTALL_ATTEMPTS: Final = 120


# =============================================================================
# Remote Shell
# =============================================================================

PROMPT_MARKER: Final = "$"
DEFAULT_WORKDIR: Final = "oneshot-job"
DEFAULT_PREFIX: Final = "oneshot"
