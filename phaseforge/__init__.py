"""Phase-based app generation pipeline: planning, streamed implementation, review and fixing.

Public API
----------
Operations::

    PhaseGeneration, PhaseImplementation, CodeReview,
    FileRegeneration, RealtimeCodeFixer, FastCodeFixer,
    ScreenshotAnalysis, UserConversationProcessor,
    OperationOptions, join_file_fixes, generate_readme

Services::

    regenerate_files, apply_file_outputs, run_phase_cycle

Inference::

    execute_inference, InferenceResult, StreamOptions

Errors::

    PhaseForgeError, ConfigurationError, InferenceError,
    RateLimitExceededError, SecurityError, SchemaValidationError,
    OperationError
"""

from phaseforge.config import VERSION
from phaseforge.errors import (
    ConfigurationError,
    InferenceError,
    OperationError,
    PhaseForgeError,
    RateLimitExceededError,
    SchemaValidationError,
    SecurityError,
)
from phaseforge.inference import InferenceResult, StreamOptions, execute_inference
from phaseforge.operations.base import OperationOptions
from phaseforge.operations.code_review import CodeReview
from phaseforge.operations.fast_code_fixer import FastCodeFixer
from phaseforge.operations.file_regeneration import FileRegeneration
from phaseforge.operations.phase_generation import PhaseGeneration
from phaseforge.operations.phase_implementation import (
    PhaseImplementation,
    generate_readme,
    join_file_fixes,
)
from phaseforge.operations.realtime_fixer import RealtimeCodeFixer
from phaseforge.operations.screenshot_analysis import ScreenshotAnalysis
from phaseforge.operations.user_conversation import UserConversationProcessor
from phaseforge.services.build_loop import apply_file_outputs, regenerate_files, run_phase_cycle

__version__ = VERSION

__all__ = [
    "CodeReview",
    "ConfigurationError",
    "FastCodeFixer",
    "FileRegeneration",
    "InferenceError",
    "InferenceResult",
    "OperationError",
    "OperationOptions",
    "PhaseForgeError",
    "PhaseGeneration",
    "PhaseImplementation",
    "RateLimitExceededError",
    "RealtimeCodeFixer",
    "SchemaValidationError",
    "ScreenshotAnalysis",
    "SecurityError",
    "StreamOptions",
    "UserConversationProcessor",
    "apply_file_outputs",
    "execute_inference",
    "generate_readme",
    "join_file_fixes",
    "regenerate_files",
    "run_phase_cycle",
]
