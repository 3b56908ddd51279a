"""Tests for tasseo.workers.envelope job contracts."""

from __future__ import annotations

from uuid import uuid4

import pytest

from tasseo.core.errors import InvalidJobError
from tasseo.models import CreditType, Facet, Persona
from tasseo.workers.envelope import AnalysisJob, ChatReplyJob, DeliveryContext, QueueMessage, parse_job

BASE = {"telegram_user_id": 11, "chat_id": 11, "message_id": 3, "file_id": "AgAC-file"}


class TestAnalysisJob:
    def test_defaults(self):
        job = parse_job(AnalysisJob, BASE)

        assert job.facet is Facet.ALL
        assert job.persona is Persona.ARINA
        assert job.language == "ru"
        assert job.billed_as is CreditType.PRO
        assert job.is_continuation is False

    def test_single_facet_billed_basic(self):
        job = parse_job(AnalysisJob, {**BASE, "facet": "health"})
        assert job.credit_type is CreditType.BASIC

    @pytest.mark.parametrize("raw, expected", [("en-US", "en"), ("ZH", "zh"), ("de", "ru"), (None, "ru")])
    def test_language_normalized(self, raw, expected):
        assert parse_job(AnalysisJob, {**BASE, "language": raw}).language == expected

    def test_group_is_deterministic_per_payload(self):
        first = parse_job(AnalysisJob, BASE)
        again = parse_job(AnalysisJob, dict(BASE))
        other = parse_job(AnalysisJob, {**BASE, "message_id": 4})

        assert first.session_group_id == again.session_group_id
        assert first.session_group_id != other.session_group_id

    def test_continuation_keeps_group_unset(self):
        job = parse_job(AnalysisJob, {**BASE, "file_id": None, "facet": "love", "continuation_of": str(uuid4())})

        assert job.is_continuation is True
        assert job.session_group_id is None

    def test_round_trips_through_queue_json(self):
        job = parse_job(AnalysisJob, {**BASE, "facet": "money", "persona": "cassandra", "user_name": "Ann"})
        assert parse_job(AnalysisJob, job.model_dump(mode="json", exclude_none=True)) == job

    @pytest.mark.parametrize(
        "payload",
        [
            {**BASE, "file_id": None},
            {**BASE, "continuation_of": str(uuid4())},  # "all" cannot be a continuation
            {**BASE, "facet": "weather"},
            {**BASE, "persona": "merlin"},
            {**BASE, "telegram_user_id": True},
            {**BASE, "telegram_user_id": 0},
            {**BASE, "message_id": -1},
            {**BASE, "continuation_of": "not-a-uuid", "facet": "love"},
        ],
    )
    def test_invalid_payloads(self, payload):
        with pytest.raises(InvalidJobError):
            parse_job(AnalysisJob, payload)

    def test_invalid_job_keeps_validation_errors(self):
        with pytest.raises(InvalidJobError) as exc_info:
            parse_job(AnalysisJob, {"chat_id": 1})

        fields = {tuple(err["loc"]) for err in exc_info.value.validation_errors}
        assert ("telegram_user_id",) in fields
        assert exc_info.value.raw_payload == {"chat_id": 1}

    def test_non_object_payload(self):
        with pytest.raises(InvalidJobError, match="list"):
            parse_job(AnalysisJob, [1, 2])


def test_chat_reply_job_requires_text():
    with pytest.raises(InvalidJobError):
        parse_job(ChatReplyJob, {"telegram_user_id": 1, "chat_id": 1, "message_id": 1, "text": ""})


class TestQueueMessage:
    def test_read_ct_defaults_to_first_delivery(self):
        message = QueueMessage.from_raw({"msg_id": "17", "payload": {}})

        assert message.msg_id == 17
        assert message.read_ct == 1

    def test_unusable_msg_id(self):
        assert QueueMessage.from_raw({"msg_id": "abc", "payload": {}}).msg_id is None

    def test_final_attempt(self):
        assert DeliveryContext(msg_id=1, attempt=3, max_attempts=4).is_final_attempt is False
        assert DeliveryContext(msg_id=1, attempt=4, max_attempts=4).is_final_attempt is True
        assert DeliveryContext(msg_id=1, attempt=6, max_attempts=4).is_final_attempt is True
