# /chatflow/workflows/validator.py

"""
Pure authoring checks for flow documents.

The interpreter never refuses to run a flow because of these problems; it
takes a deterministic fallback path at runtime. These checks let operators
find the problems before a customer does:
- conditions without a variable
- edges pointing at nodes that do not exist
- poll options and condition branches without an outgoing edge
- nodes that cannot be reached from the entry node
- flow links to unknown flows

All functions are side-effect free and need no database access.
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple, TypedDict

from pydantic import ValidationError

from chatflow.models.flow import ConditionNode, Flow, FlowLinkNode, Node, PollNode


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


class FlowIssue(TypedDict):
    error_code: str
    message: str
    node_id: Optional[str]


VALID: ValidationResult = {"is_valid": True, "error_code": None, "message": None}


def _issue(error_code: str, message: str, node_id: Optional[str] = None) -> FlowIssue:
    return {"error_code": error_code, "message": message, "node_id": node_id}


def _handles(flow: Flow, node_id: str) -> set:
    return {e.source_handle for e in flow.resolve_outgoing(node_id)}


def validate_condition_node(node: ConditionNode) -> ValidationResult:
    """
    Validate that a condition node names the variable it compares.

    Args:
        node: The condition node to check

    Returns:
        ValidationResult with is_valid=False when no variable is configured
    """
    if not node.data.variable:
        return {
            "is_valid": False,
            "error_code": "CONDITION_WITHOUT_VARIABLE",
            "message": f"Condition '{node.id}' has no variable; it will always take the 'false' branch"
        }
    return VALID


def validate_condition_edges(flow: Flow, node: ConditionNode) -> List[FlowIssue]:
    handles = _handles(flow, node.id)
    issues = []
    for branch in ("true", "false"):
        if branch not in handles:
            issues.append(_issue(
                "MISSING_BRANCH_EDGE",
                f"Condition '{node.id}' has no '{branch}' edge",
                node.id,
            ))
    return issues


def validate_poll_edges(flow: Flow, node: PollNode) -> List[FlowIssue]:
    handles = _handles(flow, node.id)
    if None in handles:
        # An unlabelled edge catches every option.
        return []
    issues = []
    for index, option in enumerate(node.data.options):
        if str(index) not in handles and f"option-{index}" not in handles:
            issues.append(_issue(
                "MISSING_OPTION_EDGE",
                f"Poll '{node.id}' option {index + 1} ('{option}') has no outgoing edge",
                node.id,
            ))
    return issues


def find_dangling_edges(flow: Flow) -> List[FlowIssue]:
    issues = []
    for edge in flow.edges:
        for end, node_id in (("source", edge.source_node_id), ("target", edge.target_node_id)):
            if not flow.has_node(node_id):
                issues.append(_issue(
                    "DANGLING_EDGE",
                    f"Edge '{edge.id or edge.source_node_id + '->' + edge.target_node_id}' {end} "
                    f"'{node_id}' does not exist",
                ))
    return issues


def find_unreachable_nodes(flow: Flow) -> List[str]:
    """Ids of nodes that no path from the entry node reaches, in declaration order."""
    entry = flow.entry_node()
    seen = {entry.id}
    frontier = [entry.id]
    while frontier:
        current = frontier.pop()
        for edge in flow.resolve_outgoing(current):
            if edge.target_node_id not in seen and flow.has_node(edge.target_node_id):
                seen.add(edge.target_node_id)
                frontier.append(edge.target_node_id)
    return [node.id for node in flow.nodes if node.id not in seen]


def validate_flow_link(node: FlowLinkNode, known_flow_ids: Optional[Iterable[str]]) -> ValidationResult:
    if not node.data.target_flow_id:
        return {
            "is_valid": False,
            "error_code": "FLOW_LINK_WITHOUT_TARGET",
            "message": f"Flow link '{node.id}' has no target flow"
        }
    if known_flow_ids is not None and node.data.target_flow_id not in set(known_flow_ids):
        return {
            "is_valid": False,
            "error_code": "UNKNOWN_FLOW_LINK_TARGET",
            "message": f"Flow link '{node.id}' targets unknown flow '{node.data.target_flow_id}'"
        }
    return VALID


def _node_issues(flow: Flow, node: Node, known_flow_ids: Optional[Iterable[str]]) -> List[FlowIssue]:
    issues: List[FlowIssue] = []
    if isinstance(node, ConditionNode):
        result = validate_condition_node(node)
        if not result["is_valid"]:
            issues.append(_issue(result["error_code"], result["message"], node.id))
        issues.extend(validate_condition_edges(flow, node))
    elif isinstance(node, PollNode):
        issues.extend(validate_poll_edges(flow, node))
    elif isinstance(node, FlowLinkNode):
        result = validate_flow_link(node, known_flow_ids)
        if not result["is_valid"]:
            issues.append(_issue(result["error_code"], result["message"], node.id))
    return issues


def validate_flow(flow: Flow, known_flow_ids: Optional[Iterable[str]] = None) -> List[FlowIssue]:
    """
    Run every authoring check on a decoded flow.

    Args:
        flow: The flow to check
        known_flow_ids: Ids of flows that flow links may target; None skips that check

    Returns:
        A list of issues, empty when the flow is clean
    """
    issues: List[FlowIssue] = []
    for node in flow.nodes:
        issues.extend(_node_issues(flow, node, known_flow_ids))
    issues.extend(find_dangling_edges(flow))
    for node_id in find_unreachable_nodes(flow):
        issues.append(_issue("UNREACHABLE_NODE", f"Node '{node_id}' cannot be reached from the entry node", node_id))
    return issues


def validate_flow_document(document: Dict[str, Any],
                           known_flow_ids: Optional[Iterable[str]] = None) -> Tuple[Optional[Flow], List[FlowIssue]]:
    """Decode a raw flow document and validate it; decoding errors are reported as issues."""
    try:
        flow = Flow.model_validate(document)
    except ValidationError as e:
        issues = [
            _issue("INVALID_DOCUMENT", f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}")
            for err in e.errors()
        ]
        return None, issues
    return flow, validate_flow(flow, known_flow_ids)
