# file: engine/__init__.py
from .context_builder import ContextBuilder
from .rules import RulesEngine
from .detector import CompletionDetector
from .enhancer import ActionsAIEnhancer
from .email_analyzer import EmailAnalyzer
from .generator import ActionGenerator

__all__ = [
    "ContextBuilder", "RulesEngine", "CompletionDetector",
    "ActionsAIEnhancer", "EmailAnalyzer", "ActionGenerator"
]
