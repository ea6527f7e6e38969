"""Flow planning: dependency graphs and mapping logic."""

from mapflow.orchestration.graph import Edge, FlowGraph, StepIO, build_graph, plan_steps
from mapflow.orchestration.logic import check_logic, compile_logic, required_params, run_logic

__all__ = [
    "Edge",
    "FlowGraph",
    "StepIO",
    "build_graph",
    "check_logic",
    "compile_logic",
    "plan_steps",
    "required_params",
    "run_logic",
]
