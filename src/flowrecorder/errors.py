from __future__ import annotations

from pathlib import Path
from typing import Sequence


class FlowRecorderError(Exception):
    pass


class RecorderStateError(FlowRecorderError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot {requested} while recorder is {current}.")
        self.current = current
        self.requested = requested


class SpecNotFoundError(FlowRecorderError):
    def __init__(self, test_name: str, searched: Sequence[Path]) -> None:
        searched_text = ", ".join(str(path) for path in searched) or "(no layouts)"
        super().__init__(f"Spec not found for test '{test_name}'. Searched: {searched_text}")
        self.test_name = test_name
        self.searched = tuple(searched)


class MissingCredentialsError(FlowRecorderError):
    def __init__(self, missing: Sequence[str]) -> None:
        super().__init__(
            "Remote execution needs credentials in the environment. Missing: " + ", ".join(missing)
        )
        self.missing = tuple(missing)


class UnknownTargetError(FlowRecorderError):
    def __init__(self, target: str, known: Sequence[str]) -> None:
        super().__init__(f"Unknown remote target '{target}'. Known targets: {', '.join(known)}")
        self.target = target
        self.known = tuple(known)


class ParameterizationError(FlowRecorderError):
    pass


class ProcessSpawnError(FlowRecorderError):
    pass
