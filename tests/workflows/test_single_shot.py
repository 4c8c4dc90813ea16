import base64

import pytest

from creastudio.tools.catalog import parse_tool
from creastudio.utils.genai_client import CredentialRejectedError, NoOutputError
from creastudio.tools import messages
from creastudio.utils.media import InlineImage, MediaBlob
from creastudio.workflows.single_shot import SingleShotWorkflow, split_items


def _tool(kind, template="{prompt}", fields=None, **extra):
    raw = {
        "kind": kind,
        "model": "test-model",
        "template": template,
        "fields": fields or [{"name": "prompt", "required": True}],
    }
    raw.update(extra)
    return parse_tool(f"{kind}_tool", raw)


def test_image_tool_returns_exactly_one_image(fake_api, tmp_path):
    fake_api.images = [
        MediaBlob(data=b"first", mime_type="image/png"),
        MediaBlob(data=b"second", mime_type="image/png"),
    ]
    workflow = SingleShotWorkflow(fake_api, _tool("image"), results_dir=str(tmp_path))

    response = workflow.run({"prompt": "A castle in the clouds"})

    assert response.success
    assert base64.b64decode(response.content["data"]) == b"first"
    assert response.content["mime_type"] == "image/png"
    assert response.output_path.endswith(".png")
    name, kwargs = fake_api.calls[0]
    assert name == "generate_images"
    assert kwargs["prompt"] == "A castle in the clouds"
    assert kwargs["number_of_images"] == 1


def test_image_tool_failure_returns_generic_error(fake_api):
    fake_api.error = NoOutputError("Nenhuma imagem foi gerada.")
    workflow = SingleShotWorkflow(fake_api, _tool("image", error_message="Erro na imagem"))

    response = workflow.run({"prompt": "A castle in the clouds"})

    assert response.success is False
    assert response.error == "Erro na imagem"
    assert response.content is None
    assert response.output_path is None
    assert workflow.error == "Erro na imagem"


def test_credential_failure_uses_api_key_message(fake_api):
    fake_api.error = CredentialRejectedError("403 PERMISSION_DENIED")
    workflow = SingleShotWorkflow(fake_api, _tool("text"))

    response = workflow.run({"prompt": "Olá"})

    assert response.error == messages.INVALID_API_KEY


def test_missing_required_field_never_calls_api(fake_api):
    workflow = SingleShotWorkflow(fake_api, _tool("text"))
    assert workflow.run({}) is None
    assert workflow.run({"prompt": "   "}) is None
    assert fake_api.calls == []


def test_text_tool_passes_sampling_options(fake_api):
    spec = _tool("text", options={"temperature": 0.75, "top_p": 0.95})
    response = SingleShotWorkflow(fake_api, spec).run({"prompt": "um livro"})

    assert response.content == fake_api.text
    _, kwargs = fake_api.calls[0]
    assert kwargs["temperature"] == 0.75
    assert kwargs["top_p"] == 0.95


def test_list_tool_splits_lines(fake_api):
    response = SingleShotWorkflow(fake_api, _tool("list")).run({"prompt": "títulos"})
    assert response.content == ["Primeira linha", "Segunda linha", "Terceira linha"]


def test_list_tool_with_separator(fake_api):
    fake_api.text = "seo, marketing ,  ,conteúdo"
    spec = _tool("list", options={"separator": ","})
    response = SingleShotWorkflow(fake_api, spec).run({"prompt": "texto"})
    assert response.content == ["seo", "marketing", "conteúdo"]


def test_image_edit_sends_the_reference_image(fake_api):
    spec = _tool(
        "image_edit",
        template='Redesenhe: "{prompt}"',
        fields=[
            {"name": "room", "type": "image", "required": True},
            {"name": "prompt", "required": True},
        ],
    )
    image = InlineImage.from_bytes(b"room-bytes", mime_type="image/jpeg")
    workflow = SingleShotWorkflow(fake_api, spec)

    assert workflow.run({"prompt": "estilo escandinavo"}) is None
    response = workflow.run({"prompt": "estilo escandinavo"}, images={"room": image})

    assert response.success
    name, kwargs = fake_api.calls[0]
    assert name == "edit_image"
    assert kwargs["image"] is image
    assert kwargs["instruction"] == 'Redesenhe: "estilo escandinavo"'


def test_audio_tool_uses_catalog_voice(fake_api):
    spec = _tool("audio", template="Gere o seguinte efeito sonoro: {prompt}.", options={"voice_name": "Zephyr"})
    response = SingleShotWorkflow(fake_api, spec).run({"prompt": "chuva"})

    assert response.content["mime_type"] == "audio/wav"
    _, kwargs = fake_api.calls[0]
    assert kwargs["voice_name"] == "Zephyr"
    assert kwargs["prompt"] == "Gere o seguinte efeito sonoro: chuva."


def test_empty_media_payload_is_a_failure(fake_api):
    fake_api.speech = MediaBlob(data=b"", mime_type="audio/wav")
    response = SingleShotWorkflow(fake_api, _tool("audio")).run({"prompt": "chuva"})
    assert response.success is False


def test_streaming_and_video_kinds_are_rejected(fake_api):
    with pytest.raises(ValueError):
        SingleShotWorkflow(fake_api, _tool("stream"))


def test_split_items_ignores_blank_lines():
    assert split_items("a\n\n b \n") == ["a", "b"]
