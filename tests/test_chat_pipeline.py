"""End-to-end tests for ChatPipeline on the sqlite store with a scripted client."""

from concurrent.futures import wait

import pytest

from chatpipe.clients.relay_client import CancelToken
from chatpipe.core.attachments import create_pasted_attachment
from chatpipe.core.chat import ChatPipeline
from chatpipe.core.errors import EmptyResponseError, StreamError, ValidationError
from chatpipe.core.models import AttachmentType, MemoryEntry

from conftest import ScriptedClient


class FailingClient(ScriptedClient):
    def __init__(self, exc, **kwargs):
        super().__init__(**kwargs)
        self.exc = exc

    def stream(self, messages, model=None, on_chunk=None, reasoning=False, cancel_token=None):
        self.stream_calls.append({"messages": list(messages), "model": model, "reasoning": reasoning})
        raise self.exc


@pytest.fixture
def client(settings):
    return ScriptedClient(reply="Sure, here you go.", settings=settings)


@pytest.fixture
def pipeline(store, client, settings):
    p = ChatPipeline(store, client=client, settings=settings)
    yield p
    p.close(wait=True)


def _finish(result):
    wait(result.jobs, timeout=10)


def _system_prompt(client, call=0):
    return client.stream_calls[call]["messages"][0]["content"]


class TestSendMessage:
    def test_new_conversation_round_trip(self, pipeline, store, client):
        seen = []
        result = pipeline.send_message("Plan a trip to Oslo", user_id="u1",
                                       on_chunk=lambda d, acc: seen.append(d))
        _finish(result)

        assert result.created and not result.cancelled
        assert result.text == "Sure, here you go."
        assert "".join(seen) == result.text
        assert result.title == "Test Title"

        conv = store.get_conversation(result.conversation_id)
        assert conv.title == "Test Title"
        msgs = store.get_messages(conv.id)
        assert [(m.role.value, m.content) for m in msgs] == [
            ("user", "Plan a trip to Oslo"),
            ("assistant", "Sure, here you go."),
        ]
        assert msgs[1].model == pipeline.settings.default_model

    def test_api_messages_shape_for_new_conversation(self, pipeline, client):
        pipeline.send_message("hi", user_id="u1", model="m-2", reasoning=True)
        call = client.stream_calls[0]
        assert [m["role"] for m in call["messages"]] == ["system", "user"]
        assert call["messages"][-1]["content"] == "hi"
        assert call["model"] == "m-2"
        assert call["reasoning"] is True

    def test_empty_message_rejected_before_anything(self, pipeline, store, client):
        with pytest.raises(ValidationError):
            pipeline.send_message("   ", user_id="u1")
        assert client.stream_calls == []
        assert store.list_conversations("u1") == []

    def test_history_and_profile_feed_the_prompt(self, pipeline, store, client):
        conv = store.create_conversation("u1", "Chat", "m")
        store.add_message(conv.id, "user", "earlier question")
        store.add_message(conv.id, "assistant", "earlier answer")
        store.update_user_profile("u1", {
            "preferences": {"modelPreferences": "Answer in German"},
            "memories": [MemoryEntry(id="m1", text="Lives in Oslo", created_at="2024-01-01T00:00:00.000000Z")],
        })

        result = pipeline.send_message("and now?", user_id="u1", conversation_id=conv.id)
        _finish(result)

        messages = client.stream_calls[0]["messages"]
        assert [m["content"] for m in messages[1:]] == ["earlier question", "earlier answer", "and now?"]
        prompt = _system_prompt(client)
        assert "User preferences: Answer in German" in prompt
        assert "- Lives in Oslo" in prompt
        assert not result.created
        assert result.title is None
        assert client.calls_of("title") == []

    def test_attachments_inlined_and_recorded(self, pipeline, store, client):
        code = create_pasted_attachment(AttachmentType.CODE, "a.py", "print(1)")
        result = pipeline.send_message("why?", user_id="u1", attachments=[code])
        assert client.stream_calls[0]["messages"][-1]["content"] == "why?\n\n```\nprint(1)\n```"
        stored = store.get_messages(result.conversation_id)[0]
        assert stored.attachments == [{"id": code.id, "type": "code", "name": "a.py"}]

    def test_attachment_only_message_allowed(self, pipeline, client):
        text = create_pasted_attachment(AttachmentType.TEXT, "notes.txt", "some notes")
        result = pipeline.send_message("", user_id="u1", attachments=[text])
        assert result.text
        assert client.stream_calls[0]["messages"][-1]["content"] == "some notes"


class TestEnrichment:
    def test_user_memory_saved_outside_projects(self, store, settings):
        client = ScriptedClient(answers={"memory": '{"action": "add", "memory": "Plans a trip to Oslo"}'},
                                settings=settings)
        pipeline = ChatPipeline(store, client=client, settings=settings)
        try:
            _finish(pipeline.send_message("I'm going to Oslo", user_id="u1"))
        finally:
            pipeline.close()
        assert [m.text for m in store.get_user_profile("u1").memories] == ["Plans a trip to Oslo"]
        assert client.calls_of("summary") == []
        assert client.calls_of("project") == []

    def test_enrichment_failure_does_not_affect_turn(self, store, settings):
        client = ScriptedClient(answers={"memory": StreamError("down", status_code=503)}, settings=settings)
        pipeline = ChatPipeline(store, client=client, settings=settings)
        try:
            result = pipeline.send_message("hello", user_id="u1")
            _finish(result)
        finally:
            pipeline.close()
        assert result.text == client.reply
        assert len(store.get_messages(result.conversation_id)) == 2
        assert store.get_user_profile("u1").memories == []

    def test_project_turn_uses_sibling_summaries_and_updates_project(self, store, settings):
        client = ScriptedClient(answers={"project": '{"action": "add", "memory": "Uses Postgres"}'},
                                settings=settings)
        pipeline = ChatPipeline(store, client=client, settings=settings)

        project = store.create_project("u1", "Apollo", instructions="Be precise")
        sibling = store.create_conversation("u1", "Kickoff", "m")
        current = store.create_conversation("u1", "Current", "m")
        empty = store.create_conversation("u1", "Empty", "m")
        for c in (sibling, current, empty):
            store.add_conversation_to_project(project.id, c.id)
        store.update_conversation(sibling.id, {"summary": "- chose Postgres"})
        store.update_conversation(current.id, {"summary": "- own summary"})
        store.add_message(current.id, "user", "hello")

        try:
            result = pipeline.send_message("what db?", user_id="u1", conversation_id=current.id,
                                           project_id=project.id)
            _finish(result)
        finally:
            pipeline.close()

        prompt = _system_prompt(client)
        assert '# Project Context: "Apollo"' in prompt
        assert "### Kickoff\n- chose Postgres" in prompt
        assert "own summary" not in prompt
        assert "### Empty" not in prompt

        assert store.get_conversation(current.id).summary == "- decided things"
        assert [m.text for m in store.get_project(project.id).memories] == ["Uses Postgres"]
        assert client.calls_of("memory") == []

    def test_new_project_conversation_is_attached(self, pipeline, store):
        project = store.create_project("u1", "Apollo")
        result = pipeline.send_message("start", user_id="u1", project_id=project.id)
        _finish(result)
        assert result.conversation_id in store.get_project(project.id).conversation_ids
        assert store.get_conversation(result.conversation_id).project_id == project.id

    def test_follow_up_turns_keep_project_context(self, store, settings):
        client = ScriptedClient(answers={"project": '{"action": "add", "memory": "Targets Postgres 16"}'},
                                settings=settings)
        pipeline = ChatPipeline(store, client=client, settings=settings)
        project = store.create_project("u1", "Apollo", instructions="Be precise")
        try:
            first = pipeline.send_message("we use pg", user_id="u1", project_id=project.id)
            _finish(first)
            second = pipeline.send_message("which version?", user_id="u1",
                                           conversation_id=first.conversation_id, project_id=project.id)
            _finish(second)
        finally:
            pipeline.close()

        assert '# Project Context: "Apollo"' in _system_prompt(client, call=1)
        assert "- Targets Postgres 16" in _system_prompt(client, call=1)
        assert client.calls_of("memory") == []
        assert len(client.calls_of("summary")) == 2
        assert len(client.calls_of("project")) == 2

    def test_existing_project_conversation_without_project_id(self, store, settings):
        client = ScriptedClient(settings=settings)
        pipeline = ChatPipeline(store, client=client, settings=settings)
        project = store.create_project("u1", "Apollo", instructions="Be precise")
        conv = store.create_conversation("u1", "Chat", "m")
        store.add_conversation_to_project(project.id, conv.id)
        try:
            _finish(pipeline.send_message("go on", user_id="u1", conversation_id=conv.id))
        finally:
            pipeline.close()

        assert '# Project Context: "Apollo"' in _system_prompt(client)
        assert client.calls_of("memory") == []
        assert len(client.calls_of("summary")) == 1
        assert len(client.calls_of("project")) == 1


class TestFailuresAndCancellation:
    def test_cancelled_turn(self, pipeline, store, client):
        token = CancelToken()
        token.cancel()
        result = pipeline.send_message("hi", user_id="u1", cancel_token=token)
        assert result.cancelled
        assert result.text is None
        assert result.jobs == []
        msgs = store.get_messages(result.conversation_id)
        assert [m.role.value for m in msgs] == ["user"]
        assert client.complete_calls == []

    def test_cancel_after_completion_keeps_the_reply(self, store, settings):
        class LateCancelClient(ScriptedClient):
            def stream(self, messages, model=None, on_chunk=None, reasoning=False, cancel_token=None):
                text = super().stream(messages, model, on_chunk, reasoning, cancel_token)
                cancel_token.cancel()
                return text

        client = LateCancelClient(reply="All done.", settings=settings)
        pipeline = ChatPipeline(store, client=client, settings=settings)
        token = CancelToken()
        try:
            result = pipeline.send_message("hi", user_id="u1", cancel_token=token)
            _finish(result)
        finally:
            pipeline.close()

        assert token.cancelled
        assert not result.cancelled
        assert result.text == "All done."
        msgs = store.get_messages(result.conversation_id)
        assert [(m.role.value, m.content) for m in msgs] == [("user", "hi"), ("assistant", "All done.")]
        assert result.jobs

    def test_stream_error_propagates_without_assistant_message(self, store, settings):
        client = FailingClient(StreamError("HTTP 502: Bad Gateway", status_code=502), settings=settings)
        pipeline = ChatPipeline(store, client=client, settings=settings)
        try:
            with pytest.raises(StreamError):
                pipeline.send_message("hi", user_id="u1")
        finally:
            pipeline.close()
        conv = store.list_conversations("u1")[0]
        assert [m.role.value for m in store.get_messages(conv.id)] == ["user"]
        assert client.complete_calls == []

    def test_blank_reply_is_an_error(self, store, settings):
        client = ScriptedClient(reply="   ", settings=settings)
        pipeline = ChatPipeline(store, client=client, settings=settings)
        try:
            with pytest.raises(EmptyResponseError):
                pipeline.send_message("hi", user_id="u1")
        finally:
            pipeline.close()


class TestRegenerateAndEdit:
    def _seed(self, store):
        conv = store.create_conversation("u1", "Chat", "m")
        u1 = store.add_message(conv.id, "user", "first")
        a1 = store.add_message(conv.id, "assistant", "first answer")
        u2 = store.add_message(conv.id, "user", "second")
        a2 = store.add_message(conv.id, "assistant", "bad answer")
        return conv, [u1, a1, u2, a2]

    def test_regenerate_replaces_last_reply(self, pipeline, store, client):
        conv, (u1, a1, u2, a2) = self._seed(store)
        result = pipeline.regenerate_response(conv.id, [u1, a1, u2], user_id="u1", messages_to_delete=[a2])
        pipeline.close(wait=True)

        messages = client.stream_calls[0]["messages"]
        assert [m["content"] for m in messages[1:]] == ["first", "first answer", "second"]
        assert result.text == client.reply
        contents = [m.content for m in store.get_messages(conv.id)]
        assert contents == ["first", "first answer", "second", client.reply]

    def test_regenerate_without_user_message(self, pipeline, store):
        conv = store.create_conversation("u1", "Chat", "m")
        with pytest.raises(ValidationError, match="No user message found"):
            pipeline.regenerate_response(conv.id, [{"role": "assistant", "content": "hi"}], user_id="u1")

    def test_edit_and_resend(self, pipeline, store, client):
        conv, (u1, a1, u2, a2) = self._seed(store)
        result = pipeline.edit_and_resend("second, rephrased", conv.id, user_id="u1",
                                          kept_messages=[u1, a1], messages_to_delete=[u2, a2])
        pipeline.close(wait=True)

        messages = client.stream_calls[0]["messages"]
        assert [m["content"] for m in messages[1:]] == ["first", "first answer", "second, rephrased"]
        contents = [m.content for m in store.get_messages(conv.id)]
        assert contents == ["first", "first answer", "second, rephrased", result.text]

    def test_edit_with_blank_content(self, pipeline, store):
        conv, _ = self._seed(store)
        with pytest.raises(ValidationError):
            pipeline.edit_and_resend("  ", conv.id, user_id="u1")
