from __future__ import annotations

from productscribe.core.errors import LLMError


class FakeDescriptionModel:
    def __init__(self, response: str = "A fake product description.", *, error: LLMError | None = None) -> None:
        # Deterministic output keeps tests stable without external calls.
        self._response = response
        self._error = error
        self.calls: list[list[dict[str, str]]] = []

    async def complete(self, messages: list[dict[str, str]]) -> str:
        self.calls.append(messages)
        if self._error is not None:
            raise self._error
        return self._response
