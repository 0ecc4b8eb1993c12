import pytest

from errors import CollaboratorError, ContentFilterError
from llm_client import Summarizer, TRUNCATED_PLACEHOLDER


class FakeChoice:
    def __init__(self, content, finish_reason="stop"):
        class Msg:
            pass
        self.message = Msg()
        self.message.content = content
        self.message.refusal = None
        self.finish_reason = finish_reason


class FakeResp:
    def __init__(self, choices):
        self.choices = choices


class FakeClient:
    def __init__(self, resp):
        self.requests = []
        client = self

        class completions:
            @staticmethod
            async def create(**kwargs):  # type: ignore
                client.requests.append(kwargs)
                return resp

        class chat:
            pass

        chat.completions = completions
        self.chat = chat


def summarizer_for(resp):
    client = FakeClient(resp)
    prompts = {"summaries": "System prompt", "summarize_request": "Summarize {url}: {title}\n{content}"}
    return Summarizer(prompts, model="test-model", max_summary_length=400, client_override=client), client


@pytest.mark.asyncio
async def test_truncated_empty_content_placeholder():
    # List-of-parts content with non-standard types and empty text
    parts = [{"type": "reasoning", "text": ""}, {"type": "metadata", "text": ""}]
    summarizer, _ = summarizer_for(FakeResp([FakeChoice(parts, finish_reason="length")]))
    result = await summarizer.summarize("https://example.com", "Title", "Test truncated scenario", api_key="k")
    assert result == TRUNCATED_PLACEHOLDER


@pytest.mark.asyncio
async def test_summary_text_and_request_shape():
    summarizer, client = summarizer_for(FakeResp([FakeChoice("  A short summary.  ")]))
    result = await summarizer.summarize("https://example.com/a", "Title", "Body text", api_key="k", temperature=0.3)

    assert result == "A short summary."
    request = client.requests[0]
    assert request["model"] == "test-model"
    assert request["temperature"] == 0.3
    assert request["max_tokens"] == 100
    assert request["messages"][0] == {"role": "system", "content": "System prompt"}
    assert request["messages"][1]["content"] == "Summarize https://example.com/a: Title\nBody text"


@pytest.mark.asyncio
async def test_empty_response_is_an_error():
    summarizer, _ = summarizer_for(FakeResp([FakeChoice("")]))
    with pytest.raises(CollaboratorError):
        await summarizer.summarize("https://example.com", "Title", "Body", api_key="k")


@pytest.mark.asyncio
async def test_content_filter_finish_reason():
    summarizer, _ = summarizer_for(FakeResp([FakeChoice(None, finish_reason="content_filter")]))
    with pytest.raises(ContentFilterError):
        await summarizer.summarize("https://example.com", "Title", "Body", api_key="k")


def test_reservation_estimate():
    summarizer, _ = summarizer_for(FakeResp([]))
    input_tokens, max_output = summarizer.estimate_reservation("https://e.com", "T", "x" * 400)
    assert max_output == 100
    assert input_tokens >= 100
