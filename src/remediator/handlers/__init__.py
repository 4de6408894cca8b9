from remediator.handlers.base import Handler, HandlerResult, ModelAgent
from remediator.handlers.general_fix import GeneralFixHandler
from remediator.handlers.planner import NominatedAssignment, Planner, parse_planner_response

HANDLERS: dict[str, type[Handler]] = {
    GeneralFixHandler.name: GeneralFixHandler,
}

__all__ = [
    "GeneralFixHandler",
    "HANDLERS",
    "Handler",
    "HandlerResult",
    "ModelAgent",
    "NominatedAssignment",
    "Planner",
    "parse_planner_response",
]
