"""
Interactive CLI adapter for twinlearn.

Architectural role:
- Exposes terminal interaction with one local user and one conversation.
- Lets the operator rate replies so the user's ranking model learns online.
- Delegates all behavior to `twinlearn.core.service.TwinService`.

Request lifecycle (per user turn, CLI):
1. Read stdin.
2. Handle local control commands (`exit`/`quit`, `/good`, `/bad`, `/rate`,
   `/status`, `/new`).
3. Route normal text to `TwinService.turn`.
4. Print the selected reply with its score and temperature.

Input validation behavior:
- Empty input is ignored.
- `/rate` requires a number; invalid values print usage.
- Feedback before the first reply prints a notice.

Error handling strategy:
- EOF and keyboard interrupts terminate the loop without traceback output.
- Service shutdown (model flush) always runs on exit.

Side effects:
- Reads/writes model snapshots under `MODELS_DIR`.
- Writes to stdout for operator feedback.

Relevant environment variables:
- `TWIN_USER_ID` (default `local`).
- `LOG_LEVEL` (default `WARNING`).
"""

import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv()

from twinlearn.core.service import TwinService
from twinlearn.errors import InvalidInputError, UpstreamUnavailable


# =========================================================
# UTF-8 SAFE OUTPUT
# =========================================================

if hasattr(sys.stdout, "reconfigure"):
    try:
        sys.stdout.reconfigure(encoding="utf-8", errors="ignore")
    except (AttributeError, ValueError):
        pass


def parse_rating(command: str) -> float | None:
    """Map `/good`, `/bad`, and `/rate <x>` to a label, else `None`."""
    parts = command.split()
    head = parts[0].lower()
    if head == "/good":
        return 1.0
    if head == "/bad":
        return 0.0
    if head == "/rate" and len(parts) == 2:
        try:
            return float(parts[1])
        except ValueError:
            return None
    return None


async def _read_line(prompt: str) -> str:
    return await asyncio.to_thread(input, prompt)


async def run(service: TwinService, user_id: str) -> None:
    """
    Drive the interactive session until `exit`, EOF, or interrupt.

    Interaction with core:
    - Plain text -> `service.turn(user_id, conversation_id, text)`.
    - Ratings -> `service.feedback(last_response_id, label)`.
    """
    await service.start()
    conversation_id = await service.create_conversation(user_id)
    last_response_id = None

    print("twinlearn started. (Type 'exit' to quit, '/good' or '/bad' to rate)")
    print(f"User: {user_id}  Conversation: {conversation_id}")
    print("-" * 60)

    try:
        while True:
            try:
                text = (await _read_line("You: ")).strip()
            except EOFError:
                print()
                break
            except KeyboardInterrupt:
                print("\nInterrupted.")
                break

            if not text:
                continue

            if text.lower() in ("exit", "quit"):
                break

            if text.lower() == "/status":
                status = await service.status()
                print(f"\nOperational: {status['operational']}")
                print(f"Completion available: {status['completion']['available']}")
                print(f"Embedding available:  {status['embedding']['available']}")
                print(f"Resident models: {status['models']}\n")
                continue

            if text.lower() == "/new":
                conversation_id = await service.create_conversation(user_id)
                last_response_id = None
                print(f"\nNew conversation: {conversation_id}\n")
                continue

            if text.startswith("/"):
                label = parse_rating(text)
                if label is None:
                    print("\nUsage: /good | /bad | /rate <0..1> | /status | /new\n")
                    continue
                if last_response_id is None:
                    print("\nNothing to rate yet.\n")
                    continue
                try:
                    result = await service.feedback(last_response_id, label)
                except InvalidInputError as exc:
                    print(f"\nInvalid rating: {exc}\n")
                    continue
                except UpstreamUnavailable as exc:
                    print(f"\nCould not apply the rating right now: {exc}\n")
                    continue
                if result["accepted"]:
                    print("\nFeedback recorded.\n")
                else:
                    print("\nReply can no longer be rated.\n")
                last_response_id = None
                continue

            result = await service.turn(user_id, conversation_id, text)
            last_response_id = result.response_id

            print(f"\nTwin: {result.text}")
            if result.degraded:
                print("(degraded reply)")
            elif result.score is not None:
                print(f"(score {result.score:.3f}, temperature {result.temperature})")
            print("\n" + "-" * 60 + "\n")
    finally:
        print("Saving models...")
        await service.stop()
        print("Shutting down.")


def main():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run(TwinService(), os.getenv("TWIN_USER_ID", "local")))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
