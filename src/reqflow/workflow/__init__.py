from reqflow.workflow.engine import WorkflowEngine
from reqflow.workflow.fsm import InvalidTransition, RequirementFSM, UseCaseFSM

__all__ = ["InvalidTransition", "RequirementFSM", "UseCaseFSM", "WorkflowEngine"]
