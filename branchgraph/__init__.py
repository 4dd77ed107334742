"""branchgraph: branching question-and-answer conversations kept as a graph.

Each question and its AI answer form a pair of nodes. Questions can be asked
from any set of earlier nodes, and the AI sees every ancestor of that set.
"""

__version__ = "0.1.0"
