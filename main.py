import asyncio
import os
import sys

from lumen.auth.auth_utils import TokenIdentityProvider
from lumen.conversation.orchestrator import ChatOrchestrator
from lumen.dataclasses import PendingMessage
from lumen.db.database import get_engine, get_sessionmaker
from lumen.db.db_init import init_models
from lumen.exceptions import ChatEngineError
from lumen.generator.assistant_client import AssistantClient
from lumen.logger import logging
from lumen.memory.chat_memory import SqlChatStore
from lumen.memory.session_manager import DEFAULT_CONTEXT, SessionResolver


def print_notification(title, description):
    print(f"\n[{title}] {description}", file=sys.stderr)


async def run(message: str, context_type: str, context_id):
    await init_models(get_engine())

    identity = TokenIdentityProvider(lambda: os.getenv("LUMEN_ACCESS_TOKEN"))
    store = SqlChatStore(get_sessionmaker())
    orchestrator = ChatOrchestrator(
        SessionResolver(store, identity), store, AssistantClient(), identity,
        context_type=context_type,
        context_id=context_id,
        notify=print_notification,
    )

    printed = {"chars": 0}

    def show(snapshot):
        last = snapshot[-1] if snapshot else None
        if isinstance(last, PendingMessage):
            print(last.content[printed["chars"]:], end="", flush=True)
            printed["chars"] = len(last.content)

    orchestrator.reconciler.subscribe(show)
    try:
        await orchestrator.send(message)
    except ChatEngineError:
        return 1
    finally:
        await get_engine().dispose()
    print()
    return 0


def main():
    if len(sys.argv) < 2:
        print('usage: python main.py "<message>" [context_type] [context_id]', file=sys.stderr)
        return 2
    message = sys.argv[1]
    context_type = sys.argv[2] if len(sys.argv) > 2 else DEFAULT_CONTEXT
    context_id = sys.argv[3] if len(sys.argv) > 3 else None
    logging.info(f"Sending message in context {context_type}:{context_id}")
    return asyncio.run(run(message, context_type, context_id))


if __name__ == "__main__":
    sys.exit(main())
