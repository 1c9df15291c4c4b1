from app.flows.models import Flow, FlowSession
from app.flows.runner import FlowRunner, FlowRunnerError, LocalFlowRunner

__all__ = ["Flow", "FlowSession", "FlowRunner", "FlowRunnerError", "LocalFlowRunner"]
