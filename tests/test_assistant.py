from __future__ import annotations

import asyncio

import pytest

from fakes import FakeTransport
from llm_threads.assistant import Assistant


@pytest.mark.asyncio
async def test_reuses_assistant_with_same_name(config) -> None:
    transport = FakeTransport()
    transport.assistants = [
        {"id": "asst_other", "name": "Other"},
        {"id": "asst_jira", "name": "Jira helper", "description": "Handles tickets"},
    ]
    assistant = Assistant("Jira helper", transport, config=config)

    assert await assistant.get_id() == "asst_jira"
    assert transport.assistant_creates == 0
    assert (await assistant.get_assistant())["description"] == "Handles tickets"


@pytest.mark.asyncio
async def test_creates_with_default_model_and_params(config) -> None:
    transport = FakeTransport()
    assistant = Assistant(
        "Color picker",
        transport,
        params={"instructions": "Pick colors", "description": "Picks"},
        config=config,
    )

    assistant_id = await assistant.get_id()

    created = transport.assistants[0]
    assert created["id"] == assistant_id
    assert created["name"] == "Color picker"
    assert created["model"] == config.default_model
    assert created["instructions"] == "Pick colors"
    assert assistant.description == "Picks"


@pytest.mark.asyncio
async def test_params_model_overrides_default(config) -> None:
    transport = FakeTransport()
    await Assistant("A", transport, params={"model": "gpt-4o"}, config=config).get_id()
    assert transport.assistants[0]["model"] == "gpt-4o"


@pytest.mark.asyncio
async def test_concurrent_resolution_creates_once(config) -> None:
    transport = FakeTransport()
    assistant = Assistant("Solo", transport, config=config)

    ids = await asyncio.gather(*(assistant.get_id() for _ in range(5)))

    assert len(set(ids)) == 1
    assert transport.assistant_creates == 1


@pytest.mark.asyncio
async def test_known_id_skips_lookup(config) -> None:
    transport = FakeTransport()
    assistant = Assistant("Known", transport, id="asst_known", config=config)

    assert await assistant.get_id() == "asst_known"
    assert transport.assistant_creates == 0
    assert (await assistant.get_assistant())["id"] == "asst_known"
