#!/usr/bin/env python3
"""
AlumChat interactive console.

Usage:
    alumchat [--config alumchat.yaml] [--log-level DEBUG]

Commands:
    Type /help once started.
"""

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

from alumchat.client import AlumChat
from alumchat.config import ClientSettings, load_config
from alumchat.errors import AlumChatError
from alumchat.logger import setup_logging

logger = logging.getLogger('alumchat.cli')


def print_help():
    """Print available commands grouped by category."""
    print()
    print("=" * 60)
    print("AVAILABLE COMMANDS")
    print("=" * 60)
    print()

    print("ACCOUNT:")
    print("  /register <user> [email]      - Create an account (asks for password)")
    print("  /login <user>                 - Log in (asks for password)")
    print("  /logout                       - Log out")
    print("  /delete                       - Delete the logged-in account (permanent!)")
    print("  /quit                         - Exit")
    print()

    print("CONTACTS & PRESENCE:")
    print("  /contacts                     - List contacts with their status")
    print("  /contact <jid>                - Show one contact")
    print("  /add <jid>                    - Add a contact (sends a subscription request)")
    print("  /presence <jid>               - Probe a contact's presence")
    print("  /status <show> [text]         - Set status: available|away|xa|dnd|unavailable")
    print()

    print("NOTIFICATIONS:")
    print("  /notifications                - Show all pending requests and invites")
    print("  /requests                     - Show pending friend requests")
    print("  /accept <jid>                 - Accept a friend request")
    print("  /reject <jid>                 - Reject a friend request")
    print("  /invites                      - Show pending group invitations")
    print("  /accept-invite <room>         - Join a room you were invited to")
    print("  /decline-invite <room>        - Decline a room invitation")
    print()

    print("MESSAGING:")
    print("  /msg <jid> <message>          - Send a direct message")
    print("  /chat <jid>                   - Open a conversation (/end to close)")
    print("  /create <room>                - Create a members-only group")
    print("  /join <room>                  - Join a group and show its history")
    print("  /leave <room>                 - Leave a group")
    print("  /invite <room> <jid>          - Invite a contact to a group")
    print("  /say <room> <message>         - Send a group message")
    print("  /history <room>               - Show a group's archived messages")
    print()

    print("FILES:")
    print("  /file <jid> <path>            - Send a file (in-band)")
    print()


async def ask(prompt: str) -> str:
    return await asyncio.get_event_loop().run_in_executor(None, input, prompt)


async def ask_password() -> str:
    return await asyncio.get_event_loop().run_in_executor(None, getpass.getpass, "Password: ")


async def conversation(client: AlumChat, jid: str):
    """One-to-one conversation; global chat notifications stay muted until /end."""
    def on_message(from_jid, body):
        print(f"\n{from_jid}: {body}")

    handle = client.on_direct_message(jid, on_message)
    client.receive_notifications = False
    print(f"Chatting with {jid}. Type /end to close the conversation.")
    try:
        while True:
            line = (await ask(f"{jid}> ")).strip()
            if line == '/end':
                break
            if line:
                await client.direct_message(jid, line)
    finally:
        client.receive_notifications = True
        client.remove_listener(handle)


async def run_console(client: AlumChat):
    print_help()

    while True:
        try:
            command = (await ask("alumchat> ")).strip()
            if not command:
                continue

            parts = command.split(None, 2)
            cmd = parts[0]
            args = parts[1:]

            if cmd == "/help":
                print_help()

            elif cmd == "/quit":
                if client.is_connected():
                    await client.logout()
                break

            elif cmd == "/register":
                if not args:
                    logger.error("Usage: /register <user> [email]")
                    continue
                password = await ask_password()
                email = args[1] if len(args) > 1 else None
                await client.register(args[0], password, email)
                logger.info(f"✓ Account {args[0]} created. Use /login {args[0]}")

            elif cmd == "/login":
                if not args:
                    logger.error("Usage: /login <user>")
                    continue
                password = await ask_password()
                session = await client.login(args[0], password)
                logger.info(f"✓ Logged in as {session.handle}")

            elif cmd == "/logout":
                await client.logout()
                logger.info("✓ Logged out")

            elif cmd == "/delete":
                confirmation = await ask("Delete this account permanently? Type 'yes': ")
                if confirmation.strip().lower() == 'yes':
                    await client.delete_account()
                    logger.info("✓ Account deleted")

            elif cmd == "/contacts":
                contacts = await client.get_contacts()
                if not contacts:
                    print("No contacts.")
                for contact in contacts:
                    print(f"  {contact.jid:<35} {contact.name:<20} {contact.subscription:<6} {contact.status}")

            elif cmd == "/contact":
                if not args:
                    logger.error("Usage: /contact <jid>")
                    continue
                contact = await client.get_contact(args[0])
                presence = await client.get_presence(contact.jid)
                print(f"  JID:          {contact.jid}")
                print(f"  Name:         {contact.name}")
                print(f"  Subscription: {contact.subscription}")
                print(f"  Status:       {presence.show.value}" +
                      (f" ({presence.status})" if presence.status else ""))

            elif cmd == "/add":
                if not args:
                    logger.error("Usage: /add <jid>")
                    continue
                contact = await client.add_contact(args[0])
                logger.info(f"✓ Added {contact.jid}")

            elif cmd == "/presence":
                if not args:
                    logger.error("Usage: /presence <jid>")
                    continue
                presence = await client.get_presence(args[0])
                print(f"  {args[0]}: {presence.show.value}" +
                      (f" ({presence.status})" if presence.status else ""))

            elif cmd == "/status":
                show = args[0] if args else ''
                text = args[1] if len(args) > 1 else None
                await client.change_status(show, text)
                logger.info("✓ Status updated")

            elif cmd == "/notifications":
                pending = client.get_notifications()
                print("\n".join(f"  {n}" for n in pending) if pending else "No pending notifications.")

            elif cmd == "/requests":
                pending = client.get_contact_requests()
                print("\n".join(f"  {n}" for n in pending) if pending else "No pending friend requests.")

            elif cmd in ("/accept", "/reject"):
                if not args:
                    logger.error(f"Usage: {cmd} <jid>")
                    continue
                await client.handle_contact_request(args[0], accept=(cmd == "/accept"))
                logger.info("✓ Done")

            elif cmd == "/invites":
                pending = client.get_invite_requests()
                print("\n".join(f"  {n}" for n in pending) if pending else "No pending invitations.")

            elif cmd in ("/accept-invite", "/decline-invite"):
                if not args:
                    logger.error(f"Usage: {cmd} <room>")
                    continue
                await client.handle_group_invite(args[0], accept=(cmd == "/accept-invite"))
                logger.info("✓ Done")

            elif cmd == "/msg":
                if len(args) < 2:
                    logger.error("Usage: /msg <jid> <message>")
                    continue
                await client.direct_message(args[0], args[1])

            elif cmd == "/chat":
                if not args:
                    logger.error("Usage: /chat <jid>")
                    continue
                await conversation(client, args[0])

            elif cmd == "/create":
                if not args:
                    logger.error("Usage: /create <room>")
                    continue
                room_jid = await client.create_group(args[0])
                logger.info(f"✓ Created {room_jid}")

            elif cmd == "/join":
                if not args:
                    logger.error("Usage: /join <room>")
                    continue
                history = await client.join_group(args[0])
                for entry in history:
                    stamp = entry.timestamp.strftime('%Y-%m-%d %H:%M') if entry.timestamp else ''
                    print(f"  [{stamp}] {entry.sender}: {entry.body}")
                logger.info(f"✓ Joined {args[0]}")

            elif cmd == "/leave":
                if not args:
                    logger.error("Usage: /leave <room>")
                    continue
                await client.leave_group(args[0])

            elif cmd == "/invite":
                if len(args) < 2:
                    logger.error("Usage: /invite <room> <jid>")
                    continue
                await client.invite_to_group(args[0], args[1])
                logger.info("✓ Invitation sent")

            elif cmd == "/say":
                if len(args) < 2:
                    logger.error("Usage: /say <room> <message>")
                    continue
                await client.chat_message(args[0], args[1])

            elif cmd == "/history":
                if not args:
                    logger.error("Usage: /history <room>")
                    continue
                for entry in await client.retrieve_group_chat_history(args[0]):
                    print(f"  {entry.sender}: {entry.body}")

            elif cmd == "/file":
                if len(args) < 2:
                    logger.error("Usage: /file <jid> <path>")
                    continue
                await client.send_file(args[0], Path(args[1]).expanduser())
                logger.info("✓ File sent")

            else:
                logger.error(f"Unknown command: {cmd} (try /help)")

        except (EOFError, KeyboardInterrupt):
            if client.is_connected():
                await client.logout()
            break
        except (AlumChatError, FileNotFoundError, ValueError, ConnectionError, OSError) as e:
            logger.error(f"Failed: {e}")


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='AlumChat - XMPP console client')
    parser.add_argument(
        '--config',
        default=None,
        help='YAML config file (default: built-in settings for alumchat.xyz)'
    )
    parser.add_argument(
        '--log-level',
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Log level (overrides the config file)'
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
        settings = ClientSettings.from_config(config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    setup_logging(config, args.log_level)

    def on_chat_message(from_jid, body):
        print(f"\nNew message from {from_jid.split('@')[0]}: {body}")

    def on_group_message(room_jid, nick, body):
        print(f"\nNew message from {nick} in group {room_jid.split('@')[0]}: {body}")

    def on_notification(notification):
        print(f"\n{notification.text}")

    def on_file_received(from_jid, path):
        print(f"\nReceived file from {from_jid}: {path}")

    client = AlumChat(
        settings,
        on_chat_message_callback=on_chat_message,
        on_group_message_callback=on_group_message,
        on_notification_callback=on_notification,
        on_file_received_callback=on_file_received,
    )
    try:
        asyncio.run(run_console(client))
    except KeyboardInterrupt:
        pass
    return 0


def run():
    sys.exit(main())


if __name__ == '__main__':
    run()
