# chatpipe/core/chat.py

from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Union

from chatpipe.clients.relay_client import CancelToken, OnChunk, RelayClient
from chatpipe.config.settings import Settings, load_settings
from chatpipe.core.attachments import inline_attachments
from chatpipe.core.context import HistoryItem, build_api_messages, to_chat_message
from chatpipe.core.errors import EmptyResponseError, StreamCancelled, StreamError, ValidationError
from chatpipe.core.models import Attachment, Message, Project, Role, SiblingSummary, UserProfile
from chatpipe.core.persistence import DocumentStore
from chatpipe.core.titles import DEFAULT_TITLE, generate_title
from chatpipe.enrichment.jobs import BackgroundJobs
from chatpipe.enrichment.memory import extract_and_save_project_memory, extract_and_save_user_memory
from chatpipe.enrichment.summary import generate_and_save_conversation_summary
from chatpipe.prompts.system import compose_system_prompt
from chatpipe.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TurnResult:
    conversation_id: str
    text: Optional[str] = None
    cancelled: bool = False
    created: bool = False
    title: Optional[str] = None
    # enrichment futures; callers never need to wait on them
    jobs: List[Future] = field(default_factory=list)


class ChatPipeline:
    """
    One turn: validate, assemble a bounded context, stream the reply,
    persist it, then hand enrichment to background jobs.

    The pipeline does not enforce one stream per conversation; the caller
    keeps its own in-flight flag. Nothing is cached between turns: every
    call re-reads the conversation, project and profile from the store.
    """

    def __init__(
        self,
        store: DocumentStore,
        client: Optional[RelayClient] = None,
        jobs: Optional[BackgroundJobs] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or getattr(client, "settings", None) or load_settings()
        self.store = store
        self.client = client or RelayClient(self.settings)
        self.jobs = jobs or BackgroundJobs(self.settings.enrichment_workers)

    def close(self, wait: bool = True) -> None:
        self.jobs.shutdown(wait=wait)

    # ---------- context assembly ----------

    def _sibling_summaries(self, project_id: str, conversation_id: str) -> List[SiblingSummary]:
        try:
            siblings = self.store.get_project_conversations(project_id)
        except Exception as e:
            logger.warning("Could not load sibling conversations for project %s: %s", project_id, e)
            return []
        return [
            SiblingSummary(title=c.title or "Untitled Chat", summary=c.summary)
            for c in siblings
            if c.id != conversation_id and (c.summary or "").strip()
        ]

    def _system_prompt(self, profile: UserProfile, project: Optional[Project]) -> str:
        return compose_system_prompt(profile.memories, profile.model_preferences, project)

    def _api_messages(self, history: Sequence[HistoryItem], user_text: str, system_prompt: str):
        return build_api_messages(
            history,
            user_text,
            system_prompt,
            self.settings.max_context_messages,
            self.settings.max_context_tokens,
        )

    # ---------- streaming ----------

    def _stream_reply(
        self,
        conversation_id: str,
        api_messages,
        model: str,
        reasoning: bool,
        on_chunk: Optional[OnChunk],
        cancel_token: Optional[CancelToken],
    ) -> Optional[str]:
        """The reply text, or None when the caller cancelled."""
        try:
            text = self.client.stream(
                api_messages,
                model=model,
                on_chunk=on_chunk,
                reasoning=reasoning,
                cancel_token=cancel_token,
            )
        except StreamCancelled:
            logger.info("Turn cancelled for conversation %s.", conversation_id)
            return None
        except StreamError as e:
            logger.error("Streaming failed for conversation %s: %s", conversation_id, e)
            raise

        # a cancel that lands after the stream finished is a no-op
        if not (text or "").strip():
            raise EmptyResponseError("Empty response from model")
        return text

    # ---------- enrichment ----------

    def _schedule_enrichment(
        self,
        conversation_id: str,
        user_id: str,
        profile: UserProfile,
        project_id: Optional[str],
        project: Optional[Project],
        history: Sequence[HistoryItem],
        user_text: str,
        response_text: str,
    ) -> List[Future]:
        futures: List[Optional[Future]] = []
        snippet = self.settings.exchange_snippet_chars

        if project_id:
            futures.append(self.jobs.submit(
                f"summary:{conversation_id}",
                generate_and_save_conversation_summary,
                self.client,
                conversation_id,
                list(history),
                user_text,
                response_text,
                self.store.update_conversation,
                max_chars=self.settings.summary_max_chars,
            ))
        else:
            futures.append(self.jobs.submit(
                f"user-memory:{user_id}",
                extract_and_save_user_memory,
                self.client,
                user_text,
                response_text,
                list(profile.memories),
                lambda memories: self.store.update_user_profile(user_id, {"memories": memories}),
                snippet_chars=snippet,
            ))

        if project_id and project is not None:
            futures.append(self.jobs.submit(
                f"project-memory:{project_id}",
                extract_and_save_project_memory,
                self.client,
                user_text,
                response_text,
                project_id,
                list(project.memories),
                self.store.update_project_memory,
                snippet_chars=snippet,
            ))

        return [f for f in futures if f is not None]

    def _delete_in_background(self, conversation_id: str, messages: Sequence[Union[Message, dict, str]]) -> None:
        ids = []
        for m in messages:
            if isinstance(m, Message):
                ids.append(m.id)
            elif isinstance(m, dict):
                ids.append(str(m["id"]))
            else:
                ids.append(str(m))
        if not ids:
            return

        def _delete_all() -> None:
            for message_id in ids:
                self.store.delete_message(conversation_id, message_id)

        self.jobs.submit(f"delete-messages:{conversation_id}", _delete_all)

    # ---------- public entry points ----------

    def send_message(
        self,
        text: str,
        *,
        user_id: str,
        conversation_id: Optional[str] = None,
        model: Optional[str] = None,
        reasoning: bool = False,
        attachments: Sequence[Attachment] = (),
        project_id: Optional[str] = None,
        on_chunk: Optional[OnChunk] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> TurnResult:
        """
        Run one turn and return its result.

        Raises ValidationError before any network call when there is nothing
        to send. Transport failures propagate as StreamError; a cancelled
        stream returns TurnResult(cancelled=True) and schedules no enrichment.
        """
        if not (text or "").strip() and not attachments:
            raise ValidationError("Message cannot be empty.")

        model_name = model or self.settings.default_model
        message_text, records = inline_attachments(text, attachments)

        # Resolve / create conversation
        chat_id = conversation_id
        created = chat_id is None
        if created:
            conv = self.store.create_conversation(user_id, DEFAULT_TITLE, model_name)
            chat_id = conv.id
            if project_id:
                self.store.add_conversation_to_project(project_id, chat_id)
            logger.info("Created conversation %s (project=%s).", chat_id, project_id)
        elif not project_id:
            conv = self.store.get_conversation(chat_id)
            project_id = conv.project_id if conv is not None else None

        project = self.store.get_project(project_id) if project_id else None
        if project is not None and not created and len(project.conversation_ids) > 1:
            project.conversation_summaries = self._sibling_summaries(project_id, chat_id)

        history = [] if created else self.store.get_messages(chat_id, self.settings.history_fetch_limit)
        profile = self.store.get_user_profile(user_id)
        api_messages = self._api_messages(history, message_text, self._system_prompt(profile, project))

        self.store.add_message(chat_id, Role.USER.value, message_text, model=model_name, attachments=records)

        response_text = self._stream_reply(chat_id, api_messages, model_name, reasoning, on_chunk, cancel_token)
        if response_text is None:
            return TurnResult(conversation_id=chat_id, cancelled=True, created=created)

        self.store.add_message(chat_id, Role.ASSISTANT.value, response_text, model=model_name)

        title = None
        if created:
            title = generate_title(self.client, message_text, response_text)
            self.store.update_conversation(chat_id, {"title": title})

        jobs = self._schedule_enrichment(
            chat_id, user_id, profile, project_id, project, history, message_text, response_text
        )
        return TurnResult(conversation_id=chat_id, text=response_text, created=created, title=title, jobs=jobs)

    def regenerate_response(
        self,
        conversation_id: str,
        kept_messages: Sequence[HistoryItem],
        *,
        user_id: str,
        messages_to_delete: Sequence[Any] = (),
        model: Optional[str] = None,
        reasoning: bool = False,
        project_id: Optional[str] = None,
        on_chunk: Optional[OnChunk] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> TurnResult:
        """Replace the last reply: re-answer the last user message in `kept_messages`."""
        model_name = model or self.settings.default_model
        self._delete_in_background(conversation_id, messages_to_delete)

        kept = [to_chat_message(m) for m in kept_messages]
        user_indexes = [i for i, m in enumerate(kept) if m["role"] == Role.USER.value]
        if not user_indexes:
            raise ValidationError("No user message found")
        last_user = user_indexes[-1]

        project = self.store.get_project(project_id) if project_id else None
        profile = self.store.get_user_profile(user_id)
        api_messages = self._api_messages(
            kept[:last_user], kept[last_user]["content"], self._system_prompt(profile, project)
        )

        response_text = self._stream_reply(conversation_id, api_messages, model_name, reasoning, on_chunk, cancel_token)
        if response_text is None:
            return TurnResult(conversation_id=conversation_id, cancelled=True)

        self.store.add_message(conversation_id, Role.ASSISTANT.value, response_text, model=model_name)
        return TurnResult(conversation_id=conversation_id, text=response_text)

    def edit_and_resend(
        self,
        new_content: str,
        conversation_id: str,
        *,
        user_id: str,
        kept_messages: Sequence[HistoryItem] = (),
        messages_to_delete: Sequence[Any] = (),
        model: Optional[str] = None,
        reasoning: bool = False,
        project_id: Optional[str] = None,
        on_chunk: Optional[OnChunk] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> TurnResult:
        """Replace a user message (and everything after it) with `new_content`."""
        content = (new_content or "").strip()
        if not content:
            raise ValidationError("Message cannot be empty.")

        model_name = model or self.settings.default_model
        self._delete_in_background(conversation_id, messages_to_delete)

        project = self.store.get_project(project_id) if project_id else None
        profile = self.store.get_user_profile(user_id)
        api_messages = self._api_messages(kept_messages, content, self._system_prompt(profile, project))

        self.store.add_message(conversation_id, Role.USER.value, content, model=model_name)

        response_text = self._stream_reply(conversation_id, api_messages, model_name, reasoning, on_chunk, cancel_token)
        if response_text is None:
            return TurnResult(conversation_id=conversation_id, cancelled=True)

        self.store.add_message(conversation_id, Role.ASSISTANT.value, response_text, model=model_name)
        return TurnResult(conversation_id=conversation_id, text=response_text)
