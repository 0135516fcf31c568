#!/usr/bin/env python3
"""Follow a ticket conversation from the terminal and optionally post a message."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

import argparse
import asyncio

from marketdesk.adapters.chat import ChatGateway
from marketdesk.adapters.marketplace import MarketplaceClient
from marketdesk.config import settings
from marketdesk.errors import MarketdeskError
from marketdesk.main import configure_logging
from marketdesk.schemas.ticket import ChannelType
from marketdesk.services.conversation import TicketConversation
from marketdesk.services.notifications import Notifier
from marketdesk.services.session import create_session
from marketdesk.services.streams import create_message_stream


def _print_new(seen: set):
    def on_update(messages):
        for message in messages:
            if message.id in seen:
                continue
            seen.add(message.id)
            stamp = message.created_at.strftime("%H:%M:%S") if message.created_at else "--:--:--"
            role = message.sender_role.value if message.sender_role else "?"
            pending = " (sending)" if message.is_optimistic else ""
            print(f"[{stamp}] {role}: {message.text}{pending}")
    return on_update


async def watch(args):
    session = create_session(settings)
    client = MarketplaceClient(session, settings)
    if args.token:
        session.login(args.token)
    elif not session.is_authenticated:
        await client.agent_login(args.email, args.password)

    gateway = None
    if settings.message_transport == "chat":
        chat_token = await client.get_chat_token()
        gateway = ChatGateway(settings)
        gateway.connect_user(chat_token.user_id, chat_token.token)

    stream = create_message_stream(args.ticket_id, settings, client=client, gateway=gateway)
    if gateway is not None:
        await stream.open()

    notifier = Notifier(slack_webhook_url=settings.slack_webhook_url)
    conversation = TicketConversation(
        stream,
        notifier=notifier,
        channel=ChannelType(args.channel),
        grace_seconds=settings.optimistic_grace_seconds,
        scroll_threshold_px=settings.scroll_threshold_px,
        on_update=_print_new(set()),
    )

    await conversation.refresh()
    if args.send:
        await conversation.send(args.send)
    if args.once:
        await conversation.close()
        return

    print(f"Watching ticket {args.ticket_id} on {args.channel} (Ctrl-C to stop)")
    try:
        await conversation.run()
    finally:
        await conversation.close()


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("ticket_id")
    parser.add_argument("--channel", default=ChannelType.BRAND_AGENT.value,
                        choices=[c.value for c in ChannelType])
    parser.add_argument("--token", default=os.environ.get("MARKETDESK_TOKEN"))
    parser.add_argument("--email", default=os.environ.get("MARKETDESK_AGENT_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("MARKETDESK_AGENT_PASSWORD"))
    parser.add_argument("--send", help="Post this message once the history has loaded")
    parser.add_argument("--once", action="store_true", help="Print the history and exit")
    args = parser.parse_args()

    if not args.token and not (args.email and args.password):
        parser.error("pass --token, or --email and --password")

    configure_logging(settings.debug)
    try:
        asyncio.run(watch(args))
    except KeyboardInterrupt:
        pass
    except MarketdeskError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
