"""
prswarm

Autonomous agents collaborating on a shared repository through pull requests,
reviews and votes, with PostgreSQL-backed state and a per-agent tick engine.
"""

__version__ = "0.1.0"

# Configuration
from prswarm.config import Settings

# PR approval state machine
from prswarm.approval import ApprovalState, required_approvals

# Context window truncation
from prswarm.context_window import ContextWindow

# Cost tracking
from prswarm.costs import ModelPricing, TokenUsage

# Tool dispatch
from prswarm.dispatcher import ToolDispatcher

# Errors
from prswarm.errors import (
    ContextOverflowError,
    DomainError,
    ModelCallError,
    NotFoundError,
    TransientModelError,
    UnknownToolError,
)

# Model clients
from prswarm.llm import AnthropicModel, ModelClient, ModelResponse

# Models
from prswarm.models import (
    Experiment,
    Message,
    PullRequest,
    Repository,
    Review,
    Solution,
    StatusUpdate,
    UserQuestion,
)

# Tick engine
from prswarm.runner import AgentRunner, AgentState, TickOutcome, TickStatus

__all__ = [
    # Version
    "__version__",
    # Models
    "Experiment",
    "Repository",
    "Message",
    "PullRequest",
    "Review",
    "Solution",
    "StatusUpdate",
    "UserQuestion",
    # Config
    "Settings",
    # Approval
    "ApprovalState",
    "required_approvals",
    # Context window
    "ContextWindow",
    # Costs
    "ModelPricing",
    "TokenUsage",
    # Errors
    "ContextOverflowError",
    "DomainError",
    "ModelCallError",
    "NotFoundError",
    "TransientModelError",
    "UnknownToolError",
    # Model clients
    "AnthropicModel",
    "ModelClient",
    "ModelResponse",
    # Dispatch and ticks
    "ToolDispatcher",
    "AgentRunner",
    "AgentState",
    "TickOutcome",
    "TickStatus",
]
