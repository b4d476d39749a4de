# /chatflow/errors.py

# Exception hierarchy shared by the interpreter and its collaborators.


class ChatflowError(Exception):
    """Base class for all interpreter errors."""


class NodeNotFound(ChatflowError):
    def __init__(self, flow_id: str, node_id: str | None):
        self.flow_id = flow_id
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' not found in flow '{flow_id}'")


class FlowNotFound(ChatflowError):
    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Flow '{flow_id}' not found")


class CollaboratorError(ChatflowError):
    """Raised by external collaborators (orders, claims, catalog, documents, delivery slots)."""

    def __init__(self, collaborator: str, message: str):
        self.collaborator = collaborator
        super().__init__(f"{collaborator}: {message}")


class LoopGuardTripped(ChatflowError):
    def __init__(self, flow_id: str, node_id: str, transitions: int):
        self.flow_id = flow_id
        self.node_id = node_id
        self.transitions = transitions
        super().__init__(
            f"Loop guard tripped after {transitions} transitions in flow '{flow_id}' at node '{node_id}'"
        )


class SessionStoreUnavailable(ChatflowError):
    """The configured session backend cannot be reached."""
