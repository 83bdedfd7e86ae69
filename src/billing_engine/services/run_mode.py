"""
Explicit run mode for batch jobs
"""
from dataclasses import dataclass


@dataclass(frozen=True)
class RunMode:
    """
    How a batch job invocation may touch state
    
    dry_run: compute and report, persist nothing
    force_writes: operator override; reclaim held cycle locks regardless of
        age and re-send reminders already sent today
    """
    dry_run: bool = False
    force_writes: bool = False
    
    def __post_init__(self):
        if self.dry_run and self.force_writes:
            raise ValueError("dry_run and force_writes cannot be combined")
    
    def to_dict(self):
        return {"dry_run": self.dry_run, "force_writes": self.force_writes}


DEFAULT_RUN_MODE = RunMode()
