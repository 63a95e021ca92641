from langgraph.graph import END, StateGraph

from .types import GroundingState


def after_gather(state: GroundingState) -> str:
    if state.get("error"):
        return END
    return "render_marks"


def build_graph(grounder):
    """fuse -> render -> prompt/dispatch -> interpret, strictly in order."""
    graph = StateGraph(GroundingState)
    graph.add_node("gather_elements", grounder.gather_elements)
    graph.add_node("render_marks", grounder.render_marks)
    graph.add_node("dispatch", grounder.dispatch)
    graph.add_node("interpret_reply", grounder.interpret_reply)

    graph.set_entry_point("gather_elements")
    graph.add_conditional_edges(
        "gather_elements",
        after_gather,
        {END: END, "render_marks": "render_marks"},
    )
    graph.add_edge("render_marks", "dispatch")
    graph.add_edge("dispatch", "interpret_reply")
    graph.add_edge("interpret_reply", END)

    return graph.compile()
