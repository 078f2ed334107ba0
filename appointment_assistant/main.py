"""CLI entry point for the bank appointment assistant.

A terminal chat for development.  For production, use the FastAPI server
(``appointment_assistant/server.py``).

Usage:
    python -m appointment_assistant.main                          # guest, quiet
    python -m appointment_assistant.main --customer-type regular  # with CRM history
    python -m appointment_assistant.main --debug                  # show API calls
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import uuid

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("appointment_assistant").setLevel(logging.DEBUG if debug else logging.INFO)


async def _chat_loop(customer_type: str, customer_ref: str | None) -> None:
    # Imported here so a missing credential is reported after logging is set up
    from appointment_assistant.assistant import BookingAssistant
    from appointment_assistant.config import OPTIONS_MODEL_NAME
    from appointment_assistant.services.crm_client import CRMClient
    from appointment_assistant.services.llm import LLMClient
    from appointment_assistant.services.session_store import InMemorySessionStore

    crm = CRMClient()
    assistant = BookingAssistant(
        llm=LLMClient(),
        crm=crm,
        sessions=InMemorySessionStore(),
        options_llm=LLMClient(OPTIONS_MODEL_NAME),
    )
    session_id = str(uuid.uuid4())
    logger.info("Started new session: %s", session_id)

    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, "You: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue

            if user_input.lower() in ("exit", "quit", "q"):
                print("\nGoodbye! Have a great day!")
                break

            if user_input.lower() == "new":
                await assistant.end_session(session_id)
                session_id = str(uuid.uuid4())
                print(f"\n>> New session started: {session_id[:8]}...\n")
                continue

            try:
                result = await assistant.chat(session_id, user_input, customer_type, customer_ref)
            except Exception as e:
                logger.exception("Error processing message")
                print(f"\nAssistant: I'm sorry, something went wrong: {e}")
                print("     Please try again or type 'new' to start a fresh session.\n")
                continue

            print(f"\nAssistant: {result.reply}")
            if result.error is not None:
                print(f"     [{result.error.code}]")
            if result.missing_fields:
                print(f"     Still needed: {', '.join(result.missing_fields)}")
            if result.quick_replies:
                print(f"     Options: {' | '.join(result.quick_replies)}")
            print()
    finally:
        await crm.aclose()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Bank appointment assistant CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument(
        "--customer-type", default="guest", choices=["guest", "regular"],
        help="Chat as a guest or as a regular customer (loads CRM history)",
    )
    parser.add_argument("--customer-ref", default=None, help="CRM contact id to book under")
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Bank Appointment Assistant - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session.")
    print("=" * 60 + "\n")

    try:
        asyncio.run(_chat_loop(args.customer_type, args.customer_ref))
    except KeyboardInterrupt:
        print("\n\nGoodbye!")


if __name__ == "__main__":
    main()
