"""
Chat sessions wrapping the language model used for interpretations.

The pipeline talks to the model only through the `ChatBackend` contract:
`send(system_prompt, user_prompt, echo)` returns the reply text and
`token_totals()` reports the cumulative token usage seen by the backend.
`LangChainChatBackend` implements it on top of any LangChain chat model, and
`create_chat_model` builds the Google Gemini or local Ollama models.

A `ChatSession` is a mutable handle scoped to one analysis type. It holds the
system prompt, built once when the session is opened, and accumulates token
usage across calls. Reusing one session for several sequential interpretations
avoids rebuilding the system prompt and the model client each time.

Token accounting computes the per-call usage as `max(0, after - before)` for
each counter, so providers that report cached or non-monotonic totals never
make the session counters decrease. Counters change only after a successful
reply; a failed call leaves them untouched.
"""

# =============================================================================
# HEADER (Imports, Constants, Logger)
# =============================================================================
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, NamedTuple, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_ollama import ChatOllama

from . import constants
from .config import LLMArgs, build_llm_args
from .exceptions import LLMTransportError, ParameterValidationError
from .prompts import build_system_prompt
from .registry import validate_analysis_type

logger = logging.getLogger(__name__)
# Silence noisy third-party loggers to keep the output clean.
logging.getLogger("absl").setLevel(logging.ERROR)
logging.getLogger("google.api_core").setLevel(logging.ERROR)
logging.getLogger("httpx").setLevel(logging.WARNING)


class TokenUsage(NamedTuple):
    input_tokens: int = 0
    output_tokens: int = 0


class ChatReply(NamedTuple):
    """Reply text plus the tokens attributed to this call."""

    text: str
    input_tokens: int
    output_tokens: int


# =============================================================================
# BACKENDS
# =============================================================================
class ChatBackend(ABC):
    """
    Contract between the pipeline and a language model provider.

    Subclasses implement `_complete` and `token_totals`; `send` adds the
    echo behaviour shared by all backends.
    """

    def send(self, system_prompt: str, user_prompt: str, echo: str = "none") -> str:
        """
        Sends one prompt and returns the reply text.

        Args:
            system_prompt: The session's system prompt.
            user_prompt: The main prompt for this call.
            echo: 'none', 'output' (print the reply) or 'all' (print prompts too).
        """
        if echo == "all":
            print(f"--- System prompt ---\n{system_prompt}\n")
            print(f"--- Prompt ---\n{user_prompt}\n")
        text = self._complete(system_prompt, user_prompt)
        if echo in ("output", "all"):
            print(f"--- Response ---\n{text}\n")
        return text

    @abstractmethod
    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        """Performs the round trip to the model."""

    @abstractmethod
    def token_totals(self) -> TokenUsage:
        """Cumulative token usage as reported by the provider."""


def _message_text(content: Any) -> str:
    """Flattens LangChain message content, which may be a list of blocks."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type", "text") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def extract_token_usage(response_message: Any) -> TokenUsage:
    """
    Reads token usage from a LangChain response message.

    Providers report usage under different keys; `usage_metadata` is
    preferred and `response_metadata` is used as a fallback.
    """
    usage_data = getattr(response_message, "usage_metadata", None)
    if not usage_data:
        response_meta = getattr(response_message, "response_metadata", None) or {}
        usage_data = response_meta.get("token_usage") or response_meta
    if not usage_data:
        return TokenUsage()
    input_tokens = (
        usage_data.get("input_tokens")
        or usage_data.get("prompt_token_count")
        or usage_data.get("prompt_tokens")
        or usage_data.get("prompt_eval_count")
        or 0
    )
    output_tokens = (
        usage_data.get("output_tokens")
        or usage_data.get("candidates_token_count")
        or usage_data.get("completion_tokens")
        or usage_data.get("eval_count")
        or 0
    )
    return TokenUsage(int(input_tokens), int(output_tokens))


class LangChainChatBackend(ChatBackend):
    """
    Backend for any LangChain chat model.

    LangChain chat models are stateless, so the system prompt travels with
    every request as a `SystemMessage`.

    Attributes:
        llm (BaseChatModel): The wrapped chat model.
    """

    def __init__(self, llm: BaseChatModel):
        self.llm = llm
        self._input_tokens = 0
        self._output_tokens = 0

    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
        response_message = self.llm.invoke(messages)
        usage = extract_token_usage(response_message)
        self._input_tokens += usage.input_tokens
        self._output_tokens += usage.output_tokens
        logger.info(
            f"Token usage: {usage.input_tokens} input, {usage.output_tokens} output."
        )
        return _message_text(response_message.content)

    def token_totals(self) -> TokenUsage:
        return TokenUsage(self._input_tokens, self._output_tokens)


def create_chat_model(
    provider: str, model: Optional[str] = None, params: Optional[Dict[str, Any]] = None
) -> BaseChatModel:
    """
    Initializes a LangChain chat model for a provider.

    Args:
        provider: 'gemini' or 'ollama'.
        model: The model name; Gemini falls back to a default model.
        params: Extra keyword arguments passed to the model constructor.

    Returns:
        A LangChain chat model.

    Raises:
        ParameterValidationError: If the provider is unknown or required
            settings (API key, Ollama model name) are missing.
    """
    params = dict(params or {})
    provider = provider.lower()
    if provider == "gemini":
        if not os.environ.get("GOOGLE_API_KEY"):
            raise ParameterValidationError(
                "GOOGLE_API_KEY environment variable not set for Gemini."
            )
        model_name = model or constants.GEMINI_DEFAULT_MODEL_NAME
        logger.info(f"Initializing LangChain Gemini model: {model_name}")
        return ChatGoogleGenerativeAI(model=model_name, **params)

    elif provider == "ollama":
        if not model:
            raise ParameterValidationError("Ollama provider selected, but no model name is set.")
        logger.info(f"Initializing LangChain Ollama model: {model}")
        init_kwargs: Dict[str, Any] = {"model": model, "cache": False}
        base_url = os.environ.get("OLLAMA_BASE_URL")
        if base_url:
            init_kwargs["base_url"] = base_url
            logger.info(f"  Connecting to Ollama at: {base_url}")
        init_kwargs.update(params)
        return ChatOllama(**init_kwargs)

    else:
        raise ParameterValidationError(f"Invalid LLM provider: '{provider}'")


# =============================================================================
# CHAT SESSION
# =============================================================================
class ChatSession:
    """
    Reusable handle to the language model, scoped to one analysis type.

    A session is shared by reference: every interpretation that receives it
    updates the same counters. It is not thread-safe; callers reusing a
    session from several threads must serialize the calls.

    Attributes:
        analysis_type (str): The analysis type the session serves.
        backend (ChatBackend): The model backend.
        system_prompt (str): The system prompt sent with every request.
        provider (Optional[str]): Provider name, when known.
        model (Optional[str]): Model name, when known.
        params (Optional[Dict]): Model keyword arguments.
        echo (str): Default echo mode.
        created_at (datetime): Creation time, preserved by `reset`.
        n_interpretations (int): Number of successful calls.
        total_input_tokens (int): Cumulative input tokens.
        total_output_tokens (int): Cumulative output tokens.
    """

    def __init__(
        self,
        analysis_type: str,
        backend: ChatBackend,
        system_prompt: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        echo: str = "none",
    ):
        self.analysis_type = analysis_type
        self.backend = backend
        self.system_prompt = system_prompt
        self.provider = provider
        self.model = model
        self.params = params
        self.echo = echo
        self.created_at = datetime.now()
        self.n_interpretations = 0
        self.total_input_tokens = 0
        self.total_output_tokens = 0

    @classmethod
    def open(
        cls,
        analysis_type: str,
        llm_args: Optional[LLMArgs] = None,
        backend: Optional[ChatBackend] = None,
        **inline: Any,
    ) -> "ChatSession":
        """
        Opens a session and builds its system prompt once.

        Args:
            analysis_type: The analysis type the session will serve.
            llm_args: LLM arguments; explicit values take precedence over `inline`.
            backend: A ready backend; when omitted one is created from
                `llm_provider`, `llm_model` and `params`.
            **inline: LLM arguments given as keywords.

        Returns:
            A new `ChatSession`.

        Raises:
            ParameterValidationError: On invalid arguments or a missing provider.
            LLMTransportError: If the chat model cannot be initialized.
        """
        analysis_type = validate_analysis_type(analysis_type)
        llm_args = build_llm_args(llm_args, **inline)
        if backend is None:
            if not llm_args.llm_provider:
                raise ParameterValidationError(
                    "llm_provider is required to open a chat session (e.g. 'gemini' or 'ollama')."
                )
            try:
                chat_model = create_chat_model(
                    llm_args.llm_provider, llm_args.llm_model, llm_args.params
                )
            except ParameterValidationError:
                raise
            except Exception as e:
                logger.error(f"Failed to initialize LLM chat: {e}")
                raise LLMTransportError(
                    f"Failed to initialize LLM chat for provider '{llm_args.llm_provider}', "
                    f"model '{llm_args.llm_model or 'default'}': {e}"
                ) from e
            backend = LangChainChatBackend(chat_model)

        session = cls(
            analysis_type=analysis_type,
            backend=backend,
            system_prompt=build_system_prompt(analysis_type, llm_args),
            provider=llm_args.llm_provider,
            model=llm_args.llm_model,
            params=llm_args.params,
            echo=llm_args.echo,
        )
        logger.info(
            f"Opened {constants.ANALYSIS_DISPLAY_NAMES[analysis_type]} chat session "
            f"(provider: {session.provider or 'custom'}, model: {session.model or 'default'})."
        )
        return session

    def check_analysis_type(self, analysis_type: str) -> None:
        """
        Raises:
            ParameterValidationError: If the session serves another analysis type.
        """
        if analysis_type != self.analysis_type:
            raise ParameterValidationError(
                f"This chat session was opened for analysis_type '{self.analysis_type}' "
                f"and cannot interpret '{analysis_type}'. Open a new session with "
                f"ChatSession.open('{analysis_type}', ...)."
            )

    def send(self, prompt: str, echo: Optional[str] = None) -> ChatReply:
        """
        Sends one prompt and updates the token counters.

        Args:
            prompt: The main prompt.
            echo: Echo mode for this call; the session default when omitted.

        Returns:
            The reply with the tokens attributed to this call.

        Raises:
            LLMTransportError: If the backend fails; counters are left unchanged.
        """
        before = self.backend.token_totals()
        try:
            text = self.backend.send(self.system_prompt, prompt, echo or self.echo)
        except LLMTransportError:
            raise
        except Exception as e:
            logger.error(f"Error invoking the LLM: {e}")
            raise LLMTransportError(f"LLM call failed: {e}") from e
        after = self.backend.token_totals()

        input_tokens = max(0, after.input_tokens - before.input_tokens)
        output_tokens = max(0, after.output_tokens - before.output_tokens)
        self.total_input_tokens += input_tokens
        self.total_output_tokens += output_tokens
        self.n_interpretations += 1
        return ChatReply(text or "", input_tokens, output_tokens)

    def reset(self) -> "ChatSession":
        """Returns a fresh session with the same settings and creation time."""
        session = ChatSession(
            analysis_type=self.analysis_type,
            backend=self.backend,
            system_prompt=self.system_prompt,
            provider=self.provider,
            model=self.model,
            params=self.params,
            echo=self.echo,
        )
        session.created_at = self.created_at
        return session

    def summary(self) -> str:
        name = constants.ANALYSIS_DISPLAY_NAMES[self.analysis_type]
        return "\n".join(
            [
                f"{name} Chat Session",
                f"Provider: {self.provider or 'custom'}",
                f"Model: {self.model or 'default'}",
                f"Created: {self.created_at:%Y-%m-%d %H:%M:%S}",
                f"Interpretations run: {self.n_interpretations}",
                f"Total tokens - Input: {self.total_input_tokens}, "
                f"Output: {self.total_output_tokens}",
            ]
        )

    def __repr__(self) -> str:
        return (
            f"ChatSession(analysis_type={self.analysis_type!r}, "
            f"provider={self.provider!r}, n_interpretations={self.n_interpretations})"
        )
