"""Background workers for long-running deployments."""
from .job_poller import start_job_poller
from .stale_claim_sweeper import start_stale_claim_sweeper, sweep_once

__all__ = ["start_job_poller", "start_stale_claim_sweeper", "sweep_once"]
