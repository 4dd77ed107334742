"""Custom exceptions for conversation graph operations."""


class GraphError(Exception):
    """Base exception for conversation graph operations."""
    pass


class ValidationError(GraphError, ValueError):
    """Raised when a command carries invalid arguments."""
    pass


class ConversationNotFoundError(GraphError):
    """Raised when a conversation is not found."""
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation '{conversation_id}' not found")


class NodeNotFoundError(GraphError):
    """Raised when a node is not found."""
    def __init__(self, conversation_id: str, node_id: str):
        self.conversation_id = conversation_id
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' not found in conversation '{conversation_id}'")


class InvalidEditError(ValidationError):
    """Raised when an edit or answer targets a node that is not a user node."""
    def __init__(self, conversation_id: str, node_id: str):
        self.conversation_id = conversation_id
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' is not a user node")


class DraftNotFoundError(GraphError):
    """Raised when a draft is not found."""
    def __init__(self, draft_id: str):
        self.draft_id = draft_id
        super().__init__(f"Unknown draft: {draft_id}")


class AIServiceError(GraphError):
    """Raised when the AI collaborator fails after all attempts."""
    pass
