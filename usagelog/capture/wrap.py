"""Host call-interception contract: language models and their middleware."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator, Sequence
from contextlib import contextmanager
import inspect
from typing import Any, Protocol


class LanguageModel(Protocol):
    model_id: str
    provider: str

    async def do_generate(self, params: Any) -> Any:
        """Run a one-shot call and return the completed result."""

    async def do_stream(self, params: Any) -> Any:
        """Start a streamed call; the result carries chunks under ``stream``."""


class LanguageModelMiddleware(Protocol):
    async def wrap_generate(
        self,
        *,
        do_generate: Callable[[], Awaitable[Any]],
        params: Any,
        model: Any,
    ) -> Any:
        """Call ``do_generate`` and return its result."""

    async def wrap_stream(
        self,
        *,
        do_stream: Callable[[], Awaitable[Any]],
        params: Any,
        model: Any,
    ) -> Any:
        """Call ``do_stream`` and return its (possibly transformed) result."""


class WrappedLanguageModel:
    """A language model whose calls run through one middleware."""

    def __init__(self, model: Any, middleware: LanguageModelMiddleware) -> None:
        self.model = model
        self.middleware = middleware

    @property
    def model_id(self) -> Any:
        return getattr(self.model, "model_id", None)

    @property
    def provider(self) -> Any:
        return getattr(self.model, "provider", None)

    async def do_generate(self, params: Any) -> Any:
        return await self.middleware.wrap_generate(
            do_generate=lambda: self.model.do_generate(params),
            params=params,
            model=self.model,
        )

    async def do_stream(self, params: Any) -> Any:
        return await self.middleware.wrap_stream(
            do_stream=lambda: self.model.do_stream(params),
            params=params,
            model=self.model,
        )

    def __repr__(self) -> str:
        return f"WrappedLanguageModel(model={self.model!r}, middleware={self.middleware!r})"


def wrap_language_model(
    model: Any,
    middleware: LanguageModelMiddleware | Sequence[LanguageModelMiddleware],
) -> WrappedLanguageModel:
    """Wrap ``model`` so each call passes through ``middleware``.

    With a sequence, the first middleware is the outermost one.
    """
    chain = [middleware] if not isinstance(middleware, Sequence) else list(middleware)
    if not chain:
        raise ValueError("wrap_language_model requires at least one middleware.")
    wrapped = model
    for item in reversed(chain):
        wrapped = WrappedLanguageModel(wrapped, item)
    return wrapped


@contextmanager
def intercept_language_model(
    target: Any,
    middleware: LanguageModelMiddleware,
    *,
    generate_method: str = "do_generate",
    stream_method: str = "do_stream",
) -> Iterator[None]:
    """Patch a model object's (or class's) call methods within scope.

    Both methods must be coroutine functions taking the call params as their
    first argument (or as ``params=``).
    """
    originals: dict[str, Any] = {}
    for method_name in (generate_method, stream_method):
        original = getattr(target, method_name)
        if not inspect.iscoroutinefunction(original):
            raise TypeError(
                f"intercept_language_model supports async methods only ({method_name})."
            )
        originals[method_name] = original

    def patched(method_name: str, hook: str, continuation_name: str) -> Callable[..., Awaitable[Any]]:
        original = originals[method_name]

        async def wrapped(*args: Any, **kwargs: Any) -> Any:
            call_args = _strip_bound_self(args, target)
            model = args[0] if len(call_args) < len(args) else target
            params = kwargs["params"] if "params" in kwargs else (call_args[0] if call_args else None)
            return await getattr(middleware, hook)(
                **{continuation_name: lambda: original(*args, **kwargs)},
                params=params,
                model=model,
            )

        return wrapped

    setattr(target, generate_method, patched(generate_method, "wrap_generate", "do_generate"))
    setattr(target, stream_method, patched(stream_method, "wrap_stream", "do_stream"))
    try:
        yield
    finally:
        for method_name, original in originals.items():
            if not inspect.isclass(target) and inspect.ismethod(original):
                _restore_instance_method(target, method_name, original)
            else:
                setattr(target, method_name, original)


def _strip_bound_self(args: tuple[Any, ...], target: Any) -> tuple[Any, ...]:
    if not args:
        return args
    first = args[0]
    if inspect.isclass(target) and isinstance(first, target):
        return args[1:]
    if first is target:
        return args[1:]
    return args


def _restore_instance_method(target: Any, method_name: str, original: Any) -> None:
    # The patch shadows the class attribute on the instance.
    try:
        delattr(target, method_name)
    except AttributeError:
        setattr(target, method_name, original)
