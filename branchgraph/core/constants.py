"""Constants for conversation graph operations."""

# Node kinds
NODE_TYPES = ("user", "ai")

# Ancestor context
DEFAULT_MESSAGE_HISTORY_LIMIT = 20

# Layout
DEFAULT_NODE_WIDTH = 320
DEFAULT_NODE_HEIGHT = 180
NODE_SPACING = 40
SPIRAL_DIRECTIONS = 8
SPIRAL_MAX_RINGS = 10

# Conversations
DEFAULT_CONVERSATION_TITLE = "New Conversation"
DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a helpful learning assistant. Answer concisely and clearly, "
    "focusing on the user question."
)
MAX_TITLE_WORDS = 3

# AI collaborator
AI_MODEL = "gemini-2.5-flash-lite"
AI_API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
AI_MAX_ATTEMPTS = 2

# Persistence
SAVE_INTERVAL_SECONDS = 30
MAX_RECENT_BACKUPS = 3
BACKUP_INTERVAL_SECONDS = 3600  # Minimum 1 hour between backups
