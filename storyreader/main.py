#!/usr/bin/env python3
"""Story Reader - interactive terminal reader.

Usage:
    python -m storyreader.main --character dragon --setting forest --object key --child-name Sam
    python -m storyreader.main --resume SESSION_ID   # Continue a stored story
    python -m storyreader.main --list                # Show stored stories
"""

import argparse
import logging
from typing import Callable, Optional

from storyreader.comprehension import ComprehensionGate, GateBook
from storyreader.config import settings
from storyreader.errors import StoryAPIError, StoryError
from storyreader.models import StoryMetadata, SubmitResult
from storyreader.navigation import NavigationGuard
from storyreader.progression import COMPREHENSION_REQUIRED, ProgressionController
from storyreader.services.database import SessionDatabase
from storyreader.services.results_reporter import ResultsReporter
from storyreader.services.story_api import StoryAPIClient
from storyreader.services.story_store import SessionStore
from storyreader.ui_utils import (
    REASON_MESSAGES,
    parse_command,
    render_choices,
    render_gate_status,
    render_question,
    render_score,
    render_segment,
    summarize_sessions,
)

logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)

InputFn = Callable[[str], str]
OutputFn = Callable[[str], None]


def _ask_option(prompt: str, count: int, input_fn: InputFn, output_fn: OutputFn) -> int:
    """Ask until the reader types a number between 1 and count; returns 0-based index."""
    while True:
        raw = input_fn(prompt).strip()
        if raw.isdigit() and 1 <= int(raw) <= count:
            return int(raw) - 1
        output_fn(f"Type a number from 1 to {count}.")


def run_quiz(gate: ComprehensionGate, input_fn: InputFn, output_fn: OutputFn) -> Optional[SubmitResult]:
    """Walk the reader through a gate's questions, offering a retry when allowed."""
    result = None
    while not gate.is_satisfied() or gate.can_retry():
        if gate.passed:
            if input_fn("Try again? [y/N] ").strip().lower() != "y":
                break
            gate.retry()
        for i, question in enumerate(gate.questions):
            for line in render_question(i, question):
                output_fn(line)
            gate.answer(i, _ask_option("Your answer: ", len(question.options), input_fn, output_fn))
        result = gate.submit()
        output_fn(render_score(result))
        if not result.accepted:
            break
    return result


def run_reader(
    controller: ProgressionController,
    guard: NavigationGuard,
    session_id: str,
    index: int,
    input_fn: InputFn = input,
    output_fn: OutputFn = print,
) -> int:
    """Read a session until the story ends or the reader quits. Returns the final index."""
    while True:
        session = controller.store.require_session(session_id)
        segment = session.segments[index]
        for line in render_segment(segment, index, len(session.segments)):
            output_fn(line)

        if session.completed and index == session.last_index:
            output_fn("~ The End ~")
            return index

        gate = controller.gates.get(session_id, index)
        if gate is not None and not gate.is_satisfied():
            status = render_gate_status(gate.snapshot())
            if status:
                output_fn(status)
            run_quiz(gate, input_fn, output_fn)

        output_fn("What happens next?")
        for line in render_choices(segment.next_choices):
            output_fn(line)
        output_fn("  [e] End the story   [q] Quit")

        command, choice = parse_command(input_fn("> "), segment.next_choices)
        if command == "quit":
            return index
        if command == "invalid":
            output_fn("Pick one of the letters above.")
            continue
        if command == "next":
            index = guard.navigate(session, index + 1, index)
            continue

        try:
            if command == "end":
                if input_fn("End the story? This is the last part! [y/N] ").strip().lower() != "y":
                    continue
                result = controller.request_end_story(session, index)
            else:
                result = controller.request_choice(session, index, choice)
        except StoryAPIError as e:
            log.warning(f"[{session_id}] Extension failed: {e}")
            output_fn("Oops! Something went wrong. Try again!")
            continue

        if result.blocked:
            output_fn(REASON_MESSAGES.get(result.reason, result.reason))
            if result.reason != COMPREHENSION_REQUIRED:
                return index
            continue
        index = result.segment_index


def build_controller(
    database: Optional[SessionDatabase] = None,
    api: Optional[StoryAPIClient] = None,
) -> ProgressionController:
    store = SessionStore(database or SessionDatabase())
    api = api or StoryAPIClient()
    gates = GateBook()
    if settings.REPORT_COMPREHENSION_RESULTS:
        gates.add_listener(ResultsReporter(api, store))
    return ProgressionController(store, api, gates)


def main():
    parser = argparse.ArgumentParser(description="Story Reader")
    parser.add_argument("--character", type=str, default="")
    parser.add_argument("--setting", type=str, default="")
    parser.add_argument("--object", type=str, default="")
    parser.add_argument("--child-name", type=str, default="")
    parser.add_argument("--language", type=str, default=settings.DEFAULT_LANGUAGE, choices=["en", "nl"])
    parser.add_argument("--age", type=str, default=settings.DEFAULT_AGE)
    parser.add_argument("--resume", type=str, default=None, help="Session id to continue")
    parser.add_argument("--list", action="store_true", help="List stored stories and exit")
    args = parser.parse_args()

    controller = build_controller()
    store = controller.store

    if args.list:
        current = store.get_current()
        for row in summarize_sessions(store.sessions(), current.session_id if current else None):
            marker = "*" if row["Current"] else " "
            done = "done" if row["Completed"] else f"{row['Parts']} parts"
            print(f"{marker} {row['Session']}  {row['Title']}  ({done}, {row['Created']})")
        for sid in store.unusable_session_ids():
            print(f"! {sid}  (unusable)")
        return

    try:
        if args.resume:
            result = controller.resume(args.resume)
        else:
            metadata = StoryMetadata(
                child_name=args.child_name,
                character=args.character,
                setting=args.setting,
                object=args.object,
                language=args.language,
                age=args.age,
            )
            result = controller.start_story(metadata)
        run_reader(controller, NavigationGuard(controller.gates), result.session.session_id, result.segment_index)
    except StoryError as e:
        log.error(f"Story reader stopped: {e}")
    except (KeyboardInterrupt, EOFError):
        print()
    finally:
        controller.api.close()


if __name__ == "__main__":
    main()
