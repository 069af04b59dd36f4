import random
import unittest

from paperchat.core.errors import PipelineStreamError
from paperchat.models import (
    Conversation, Message, MessageKind, MessageMetadata, QuerySession, StepStatus,
    PIPELINE_STEP_NAMES, TERMINAL_STEP_STATUSES,
)
from paperchat.schemas import CitationCheck, CompleteEvent, ErrorEvent, ProgressEvent
from paperchat.services import AppStore
from paperchat.services.pipeline import PipelineEventInterpreter, build_citation_check_map
from support import make_settings


def progress(step, data=None):
    return ProgressEvent(step=step, data=data)


def check(citation_id, confidence, claim="claim"):
    return CitationCheck(citation_id=citation_id, claim=claim, confidence=confidence, is_valid=confidence > 0.5)


class TestPipelineEventInterpreter(unittest.TestCase):
    def setUp(self):
        self.store = AppStore(make_settings())
        self.store.conversations.create(Conversation(id="c1"))
        self.message = Message(id="m1", kind=MessageKind.RESPONSE, metadata=MessageMetadata())
        self.store.conversations.add_message("c1", self.message)
        self.session = QuerySession.start()
        self.session.bind("c1", "m1")
        self.store.start_session(self.session)
        self.interpreter = PipelineEventInterpreter(self.store, self.session)

    def statuses(self):
        return {step.name: step.status for step in self.session.steps}

    def assertAllPending(self):
        self.assertTrue(all(s.status == StepStatus.PENDING for s in self.session.steps))

    def test_session_starts_with_every_step_pending(self):
        self.assertEqual([s.name for s in self.session.steps], PIPELINE_STEP_NAMES)
        self.assertAllPending()
        self.assertNotIn("answer_chunk", PIPELINE_STEP_NAMES)
        self.assertNotIn("citation_verified", PIPELINE_STEP_NAMES)

    def test_earlier_steps_are_terminal_after_any_step_event(self):
        payloads = [None, {"status": "starting"}, {"status": "done"}, {"skipped": True}, {"success": False}]
        for seed in range(25):
            rng = random.Random(seed)
            session = QuerySession.start()
            interpreter = PipelineEventInterpreter(self.store, session)
            for _ in range(15):
                name = rng.choice(PIPELINE_STEP_NAMES)
                interpreter.handle(progress(name, rng.choice(payloads)))
                idx = PIPELINE_STEP_NAMES.index(name)
                for earlier in session.steps[:idx]:
                    with self.subTest(seed=seed, step=name, earlier=earlier.name):
                        self.assertIn(earlier.status, TERMINAL_STEP_STATUSES)

    def test_event_marks_step_active_and_infers_earlier_steps(self):
        self.interpreter.handle(progress("retrieval", {"status": "starting"}))

        result = self.statuses()
        self.assertEqual(result["retrieval"], StepStatus.ACTIVE)
        for name in ("rewriting", "entities", "classification", "expansion", "hyde"):
            self.assertEqual(result[name], StepStatus.COMPLETED)
        for name in ("reranking", "generation", "verification", "web_search"):
            self.assertEqual(result[name], StepStatus.PENDING)

    def test_skipped_flag_of_an_earlier_event_is_kept_on_inference(self):
        self.interpreter.handle(progress("hyde", {"status": "starting", "skipped": True}))
        self.interpreter.handle(progress("retrieval", {"status": "starting"}))

        result = self.statuses()
        self.assertEqual(result["hyde"], StepStatus.SKIPPED)
        self.assertEqual(result["expansion"], StepStatus.COMPLETED)
        self.assertEqual(result["retrieval"], StepStatus.ACTIVE)

    def test_current_step_status_from_event_data(self):
        cases = [
            ({"status": "done"}, StepStatus.COMPLETED),
            ({"status": "done", "skipped": True}, StepStatus.SKIPPED),
            ({"status": "done", "success": False}, StepStatus.FAILED),
            ({"success": False, "skipped": True}, StepStatus.FAILED),
            ({"status": "starting"}, StepStatus.ACTIVE),
            (None, StepStatus.ACTIVE),
        ]
        for data, expected in cases:
            with self.subTest(data=data):
                session = QuerySession.start()
                PipelineEventInterpreter(self.store, session).handle(progress("reranking", data))
                step = session.get_step("reranking")
                self.assertEqual(step.status, expected)
                self.assertEqual(step.data, data)

    def test_terminal_step_never_regresses(self):
        self.interpreter.handle(progress("reranking", {"status": "done", "count": 8}))
        self.interpreter.handle(progress("reranking", {"status": "starting"}))
        self.interpreter.handle(progress("generation", {"status": "starting"}))

        self.assertEqual(self.session.get_step("reranking").status, StepStatus.COMPLETED)
        self.assertEqual(self.session.get_step("generation").status, StepStatus.ACTIVE)

    def test_failed_step_stays_failed_when_later_steps_fire(self):
        self.interpreter.handle(progress("expansion", {"success": False, "error": "timeout"}))
        self.interpreter.handle(progress("verification", {"status": "done"}))

        self.assertEqual(self.session.get_step("expansion").status, StepStatus.FAILED)
        self.assertEqual(self.session.get_step("verification").status, StepStatus.COMPLETED)

    def test_answer_chunks_concatenate_and_mirror_to_message(self):
        expected = ""
        for fragment in ["X ", "is ", "Y ", "[Source 1]."]:
            self.interpreter.handle(progress("answer_chunk", {"chunk": fragment}))
            expected += fragment
            self.assertEqual(self.session.content, expected)
            self.assertEqual(self.message.content, self.session.content)

        self.assertEqual(self.message.content, "X is Y [Source 1].")
        self.assertAllPending()

    def test_empty_answer_chunk_is_ignored(self):
        self.interpreter.handle(progress("answer_chunk", {"chunk": ""}))
        self.interpreter.handle(progress("answer_chunk"))
        self.assertEqual(self.session.content, "")
        self.assertEqual(self.message.content, "")

    def test_citation_checks_mirror_to_message_metadata(self):
        self.interpreter.handle(progress("citation_verified", check(1, 0.9).model_dump()))
        self.interpreter.handle(progress("citation_verified", check(2, 0.4).model_dump()))

        self.assertEqual([c.citation_id for c in self.session.citation_checks], [1, 2])
        self.assertEqual(self.message.metadata.citation_checks, self.session.citation_checks)

    def test_citation_creates_metadata_when_message_has_none(self):
        bare = Message(id="m2", kind=MessageKind.RESPONSE)
        self.store.conversations.add_message("c1", bare)
        session = QuerySession.start()
        session.bind("c1", "m2")
        PipelineEventInterpreter(self.store, session).handle(progress("citation_verified", check(3, 0.7).model_dump()))

        self.assertIsNotNone(bare.metadata)
        self.assertEqual(bare.metadata.citation_checks[0].citation_id, 3)

    def test_malformed_citation_check_is_ignored(self):
        self.interpreter.handle(progress("citation_verified", {"claim": "no id"}))
        self.assertEqual(self.session.citation_checks, [])

    def test_answer_complete_is_ignored(self):
        self.interpreter.handle(progress("answer_chunk", {"chunk": "streamed"}))
        self.interpreter.handle(progress("answer_complete", {"answer": "something else"}))

        self.assertEqual(self.message.content, "streamed")
        self.assertAllPending()

    def test_web_search_progress_is_transient(self):
        self.interpreter.handle(progress("web_search_progress", {"message": "Searching arxiv.org"}))
        self.assertEqual(self.session.web_search_progress, "Searching arxiv.org")
        self.assertEqual(self.session.get_step("web_search").status, StepStatus.PENDING)

        self.interpreter.handle(progress("web_search", {"status": "complete", "results": 3}))
        self.assertIsNone(self.session.web_search_progress)
        self.assertEqual(self.session.get_step("web_search").status, StepStatus.COMPLETED)
        self.assertEqual(self.session.get_step("verification").status, StepStatus.COMPLETED)

    def test_unknown_step_is_ignored(self):
        self.interpreter.handle(progress("cache_lookup", {"status": "done"}))
        self.assertAllPending()

    def test_complete_event_is_returned(self):
        self.assertIsNone(self.interpreter.handle(progress("retrieval", {"status": "starting"})))

        event = CompleteEvent(answer="X is Y [Source 1].")
        self.assertIs(self.interpreter.handle(event), event)
        self.assertFalse(self.session.is_streaming)

    def test_error_event_raises(self):
        with self.assertRaisesRegex(PipelineStreamError, "retrieval backend down"):
            self.interpreter.handle(ErrorEvent(message="retrieval backend down"))
        self.assertFalse(self.session.is_streaming)


class TestCitationCheckMap(unittest.TestCase):
    def test_resolves_lowest_confidence(self):
        checks = [
            check(1, 0.2, "first"),
            check(2, 0.8),
            check(1, 0.9, "later but more confident"),
            check(2, 0.5, "lower"),
        ]
        resolved = build_citation_check_map(checks)

        self.assertEqual(resolved[1].claim, "first")
        self.assertEqual(resolved[2].claim, "lower")
        self.assertEqual(len(checks), 4)

    def test_keeps_first_on_ties(self):
        resolved = build_citation_check_map([check(7, 0.5, "a"), check(7, 0.5, "b")])
        self.assertEqual(resolved[7].claim, "a")


if __name__ == "__main__":
    unittest.main()
