"""
Agent Workflow Engine - resumable, multi-phase codebase analysis

Drives an AI agent file by file through a workflow definition, tracks
per-file checklists, discovers and classifies code patterns, and applies
bulk changes behind a dry-run / confirmation-token protocol.
"""

__version__ = "0.4.0"

from .schema import (
    WorkflowDefinition,
    WorkflowSession,
    SessionStatus,
    PhaseStatus,
    ItemStatus,
    FileStatus,
    NextAction,
    NextActionType,
    BatchOperation,
    BatchFilter,
    PatternMatch,
)

from .error_handling import (
    WorkflowEngineError,
    ConfigurationError,
    UnknownWorkflowType,
    MissingRequiredOption,
    EmptyScope,
    InvalidDefinition,
    SessionNotFound,
    SessionClosed,
    InvalidCompletedAction,
    InvalidOperation,
    InvalidOrExpiredToken,
    ConcurrentModification,
)

from .config import EngineConfig, ConfigManager
from .definitions import DefinitionRegistry
from .storage import InMemorySessionStore, FileSessionStore
from .tokens import TokenStore
from .session_manager import WorkflowSessionManager
from .batch import BatchOperationExecutor
from .tools import WorkflowEngine, WorkflowToolRegistry

__all__ = [
    '__version__',
    # Schema
    'WorkflowDefinition',
    'WorkflowSession',
    'SessionStatus',
    'PhaseStatus',
    'ItemStatus',
    'FileStatus',
    'NextAction',
    'NextActionType',
    'BatchOperation',
    'BatchFilter',
    'PatternMatch',
    # Errors
    'WorkflowEngineError',
    'ConfigurationError',
    'UnknownWorkflowType',
    'MissingRequiredOption',
    'EmptyScope',
    'InvalidDefinition',
    'SessionNotFound',
    'SessionClosed',
    'InvalidCompletedAction',
    'InvalidOperation',
    'InvalidOrExpiredToken',
    'ConcurrentModification',
    # Engine
    'EngineConfig',
    'ConfigManager',
    'DefinitionRegistry',
    'InMemorySessionStore',
    'FileSessionStore',
    'TokenStore',
    'WorkflowSessionManager',
    'BatchOperationExecutor',
    'WorkflowEngine',
    'WorkflowToolRegistry',
]
