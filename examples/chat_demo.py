"""Minimal demonstration of a streamed chat exchange."""

import asyncio

from exgpt_core import create_default_service
from exgpt_core.domain.events import EventChannel
from exgpt_core.domain.exceptions import BusinessError
from exgpt_core.render import IncrementalRenderer, RenderOptions


async def main() -> None:
    service = await create_default_service()
    chat = await service.create_chat()
    settings = await service.get_settings()
    renderer = IncrementalRenderer(options=RenderOptions.from_toggles(settings["enabled_toggles"]))
    channel = EventChannel()

    question = "Explain what a Python async generator is, with a short example."
    render_task = asyncio.create_task(renderer.consume(channel))
    try:
        result = await service.send_message(chat["id"], question, channel)
    except BusinessError as e:
        await render_task
        print(f"[{e.code}] {e.message}")
        return
    html = await render_task

    print("User:", question)
    print("Title:", result["title"])
    print("Assistant:", result["message"]["content"])
    print("HTML length:", len(html))


if __name__ == "__main__":
    asyncio.run(main())
