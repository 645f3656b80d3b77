"""Shared test fixtures.

Provides:
- ``set_test_config`` -- autouse fixture that patches common settings
- ``FakeInference`` -- scripted stand-in for ``execute_inference``
- ``make_options`` -- ``OperationOptions`` over a small codebase snapshot
- ``scof_block`` -- render one heredoc file block
"""

import inspect
import json

import pytest
from pydantic import BaseModel

from forge_codec.contracts import FileOutput
from phaseforge.domain.context import GenerationContext
from phaseforge.inference import InferenceResult
from phaseforge.operations.base import OperationOptions


# ---------------------------------------------------------------------------
# Marker registration
# ---------------------------------------------------------------------------


def pytest_configure(config):
    """Register custom markers.

    Tests that need real network access should be decorated with
    ``@pytest.mark.integration`` and are skipped with ``-m 'not integration'``.
    """
    config.addinivalue_line(
        "markers",
        "integration: tests requiring external services (network, real model APIs)",
    )


# ---------------------------------------------------------------------------
# Environment patching
# ---------------------------------------------------------------------------

_SETTINGS_PATCHES: dict[str, object] = {
    "phaseforge.config.settings.ANTHROPIC_API_KEY": "test-key",
    "phaseforge.config.settings.OPENAI_API_KEY": "",
    "phaseforge.config.settings.LLM_PROVIDER": "anthropic",
    "phaseforge.config.settings.FORCE_MODEL": "",
    "phaseforge.config.settings.MODEL_TIER": "sonnet",
    "phaseforge.config.settings.MAX_LLM_MESSAGES": 100,
    "phaseforge.config.settings.REALTIME_CODE_FIXER_ENABLED": True,
    "phaseforge.config.settings.REALTIME_FIX_MIN_LINES": 50,
    "phaseforge.config.settings.INFERENCE_MAX_RETRIES": 0,
}


@pytest.fixture(autouse=True)
def set_test_config(monkeypatch):
    """Patch settings for a deterministic, offline test environment.

    This is ``autouse=True`` so every test automatically gets a
    non-production configuration.
    """
    for target, value in _SETTINGS_PATCHES.items():
        monkeypatch.setattr(target, value)


# ---------------------------------------------------------------------------
# Fake inference
# ---------------------------------------------------------------------------


class FakeInference:
    """Scripted replacement for ``execute_inference``.

    Each call consumes the next scripted response:

    - ``str``: reply text (streamed to ``stream.on_chunk`` when given)
    - ``dict`` / ``BaseModel``: structured reply validated against ``schema``
    - ``InferenceResult``: returned as is (its text is still streamed)
    - ``BaseException``: raised
    - callable: called with the call's keyword arguments; its return
      value is handled as above

    Every call's keyword arguments are recorded in ``calls``.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if not self.responses:
            raise AssertionError(f"unexpected inference call for {kwargs.get('action')}")
        response = self.responses.pop(0)
        if callable(response) and not isinstance(response, (BaseModel, type)):
            response = response(**kwargs)
            if inspect.isawaitable(response):
                response = await response
        if isinstance(response, BaseException):
            raise response

        if isinstance(response, InferenceResult):
            result = response
        elif isinstance(response, str):
            result = InferenceResult(text=response)
        else:
            schema = kwargs.get("schema")
            obj = schema.model_validate(response) if isinstance(response, dict) else response
            result = InferenceResult(text=json.dumps(obj.model_dump()), object=obj)

        stream = kwargs.get("stream")
        if stream is not None and result.text:
            size = max(1, stream.chunk_size)
            for i in range(0, len(result.text), size):
                out = stream.on_chunk(result.text[i:i + size])
                if inspect.isawaitable(out):
                    await out
        return result

    @property
    def actions(self) -> list[str]:
        return [c.get("action") for c in self.calls]


@pytest.fixture
def fake_inference():
    """Return the ``FakeInference`` class for building scripted fakes."""
    return FakeInference


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_files(**contents: str) -> list[FileOutput]:
    """``make_files(**{"src/App.tsx": "..."})`` -> list of FileOutput."""
    return [FileOutput(file_path=p, file_contents=c, file_purpose=f"{p} purpose") for p, c in contents.items()]


def make_options(files: list[FileOutput] | None = None, inference=None, **kwargs) -> OperationOptions:
    context = GenerationContext(
        query="Build a todo app",
        blueprint={"title": "Todo", "views": ["list"]},
        dependencies={"react": "^18.3.0", "zustand": "^4.5.0"},
        all_files=files or [],
    )
    opts = {"context": context, **kwargs}
    if inference is not None:
        opts["inference"] = inference
    return OperationOptions(**opts)


def scof_block(path: str, contents: str, purpose: str = "") -> str:
    header = f"# Creating new file: {path}\n"
    if purpose:
        header += f"# File Purpose: {purpose}\n"
    return f"{header}cat > {path} << 'EOF'\n{contents}\nEOF\n"
