import threading

import pytest

from creastudio.tools import messages
from creastudio.utils.genai_client import CredentialRejectedError, MediaAPIError
from creastudio.utils.media import InvalidMediaError
from creastudio.workflows.streaming import Attachment, ChatSession, StreamingTextWorkflow


def test_chunks_accumulate_in_order(fake_api):
    seen = []
    workflow = StreamingTextWorkflow(fake_api, model="gemini-2.5-pro")

    outcome = workflow.run("um dragão", on_chunk=lambda fragment, text: seen.append(text))

    assert outcome.ok
    assert outcome.text == "Era uma vez"
    assert outcome.chunks == 3
    assert seen == ["Era ", "Era uma ", "Era uma vez"]
    assert workflow.text == "Era uma vez"


def test_blank_prompt_is_a_noop(fake_api):
    workflow = StreamingTextWorkflow(fake_api, model="gemini-2.5-pro")
    assert workflow.run("") is None
    assert workflow.run("  \n ") is None
    assert fake_api.calls == []


def test_failure_keeps_partial_text(fake_api):
    fake_api.stream_error = MediaAPIError("connection reset")
    workflow = StreamingTextWorkflow(fake_api, model="gemini-2.5-pro", error_message="Falhou")

    outcome = workflow.run("um dragão")

    assert not outcome.ok
    assert outcome.text == "Era uma vez"
    assert outcome.error == "Falhou"
    assert workflow.error == "Falhou"
    assert not workflow.is_loading


def test_credential_failure_uses_api_key_message(fake_api):
    fake_api.error = CredentialRejectedError("401")
    workflow = StreamingTextWorkflow(fake_api, model="gemini-2.5-pro")

    outcome = workflow.run("um dragão")

    assert outcome.error == messages.INVALID_API_KEY
    assert outcome.text == ""


def test_run_while_streaming_is_ignored(fake_api):
    started = threading.Event()
    release = threading.Event()
    workflow = StreamingTextWorkflow(fake_api, model="gemini-2.5-pro")

    def on_chunk(fragment, text):
        started.set()
        release.wait(timeout=5)

    worker = threading.Thread(target=lambda: workflow.run("primeiro", on_chunk=on_chunk))
    worker.start()
    assert started.wait(timeout=5)
    assert workflow.run("segundo") is None
    release.set()
    worker.join(timeout=5)
    assert fake_api.call_names() == ["stream_text"]


def test_chat_starts_with_local_greeting(fake_api):
    session = ChatSession(fake_api, model="gemini-2.5-flash")
    assert [m.role for m in session.messages] == ["model"]
    assert session.messages[0].text == messages.CHAT_GREETING
    assert session.history() == []


def test_chat_keeps_order_and_grows_placeholder(fake_api):
    session = ChatSession(fake_api, model="gemini-2.5-flash")
    lengths = []

    reply = session.send("Escreva um slogan", on_chunk=lambda f, text: lengths.append(len(session.messages[-1].text)))

    assert reply.text == "Era uma vez"
    assert lengths == [4, 8, 11]
    assert [(m.role, m.text) for m in session.messages[1:]] == [
        ("user", "Escreva um slogan"),
        ("model", "Era uma vez"),
    ]

    session.send("Outro")
    _, kwargs = fake_api.calls[-1]
    assert kwargs["history"] == [("user", "Escreva um slogan"), ("model", "Era uma vez")]
    assert kwargs["message"] == "Outro"


def test_chat_attachment_is_folded_into_prompt(fake_api):
    session = ChatSession(fake_api, model="gemini-2.5-flash")

    session.send("Resuma", attachment=Attachment(name="notas.txt", content="linha 1"))

    _, kwargs = fake_api.calls[-1]
    assert 'Com base no arquivo "notas.txt"' in kwargs["message"]
    assert "linha 1" in kwargs["message"]
    assert session.messages[1].text == "Resuma"


def test_chat_error_keeps_partial_reply(fake_api):
    fake_api.stream_error = MediaAPIError("stream broke")
    session = ChatSession(fake_api, model="gemini-2.5-flash")

    reply = session.send("Olá")

    assert reply.text == "Era uma vez"
    assert session.error == messages.CHAT_FAILED
    assert session.send("   ") is None


def test_attachment_from_path_only_reads_text_files(tmp_path):
    notes = tmp_path / "notas.txt"
    notes.write_text("conteúdo", encoding="utf-8")
    attachment = Attachment.from_path(str(notes))
    assert attachment.name == "notas.txt"
    assert attachment.content == "conteúdo"

    with pytest.raises(InvalidMediaError) as exc_info:
        Attachment.from_path(str(tmp_path / "foto.png"))
    assert str(exc_info.value) == messages.NOT_A_TEXT_FILE
