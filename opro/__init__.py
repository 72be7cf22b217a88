from .config import OPROConfig, OPROSettings, check_api_keys
from .data_models import Prompt, PromptState, QuestionAnswer, Session, Step
from .engines import ProposerEngine, ScoreReport, ScorerEngine
from .meta_prompt import MetaPromptSynthesizer
from .orchestrator import BatchResult, OPROOrchestrator
from .store import DiskSessionStore, InMemorySessionStore
from .cli import main

__all__ = [
    "OPROConfig",
    "OPROSettings",
    "check_api_keys",
    "Prompt",
    "PromptState",
    "QuestionAnswer",
    "Session",
    "Step",
    "ProposerEngine",
    "ScoreReport",
    "ScorerEngine",
    "MetaPromptSynthesizer",
    "BatchResult",
    "OPROOrchestrator",
    "DiskSessionStore",
    "InMemorySessionStore",
    "main",
]
