from .dsl import job, sh, uses, upload, matrix, wf, JobBuilder, build
from .model import Job, Step, Workflow, Runner, RunOutcome, WorkflowReport
from .workflow import load_workflow, parse, validate
from .scheduler import Scheduler

__all__ = [
    "job", "sh", "uses", "upload", "matrix", "wf", "JobBuilder", "build",
    "Job", "Step", "Workflow", "Runner", "RunOutcome", "WorkflowReport",
    "load_workflow", "parse", "validate", "Scheduler",
]
