from hypothesis import given, strategies as st

from book_events.delivery import MultiRecipientSender
from book_events.model import EmailMessage, ErrorCategory

from .conftest import FakeTransport
from .test_core import client_error

MESSAGE = EmailMessage(subject="Book Submitted for Review: The Long Draft", text_body="Book: The Long Draft")
PRIMARY = "editor@example.com"

addresses = st.one_of(
    st.emails(),
    st.sampled_from(["not-an-email", "dots..here@example.com", "", PRIMARY, PRIMARY.upper()]),
)


class TestSendWithRecipients:
    def test_mixed_secondaries(self):
        transport = FakeTransport()
        result = MultiRecipientSender(transport).send_with_recipients(
            PRIMARY, ["cc1@example.com", "bad-address"], MESSAGE
        )

        assert result.primary_succeeded
        assert result.message_id == "ses-1"
        assert transport.sent == [(PRIMARY, ["cc1@example.com"], MESSAGE)]
        statuses = {s.address: s for s in result.recipient_statuses}
        assert statuses["cc1@example.com"].succeeded
        assert not statuses["bad-address"].succeeded
        assert statuses["bad-address"].error == "Invalid CC email address format: bad-address"
        assert result.delivered_secondaries == ["cc1@example.com"]

    def test_no_secondaries(self):
        transport = FakeTransport()
        result = MultiRecipientSender(transport).send_with_recipients(PRIMARY, None, MESSAGE)

        assert result.primary_succeeded
        assert result.recipient_statuses == []
        assert transport.sent[0][1] == []

    def test_primary_is_dropped_from_cc(self):
        transport = FakeTransport()
        result = MultiRecipientSender(transport).send_with_recipients(
            PRIMARY, ["Editor@Example.com", "cc@example.com"], MESSAGE
        )

        assert transport.sent[0][1] == ["cc@example.com"]
        assert [s.address for s in result.recipient_statuses] == ["cc@example.com"]

    def test_invalid_primary_sends_nothing(self):
        transport = FakeTransport()
        result = MultiRecipientSender(transport).send_with_recipients(
            "nobody", ["cc@example.com", "bad"], MESSAGE
        )

        assert transport.sent == []
        assert not result.primary_succeeded
        assert result.error == "Invalid email address: nobody"
        assert result.cause is None
        assert all(not s.succeeded for s in result.recipient_statuses)
        assert {s.address for s in result.recipient_statuses} == {"cc@example.com", "bad"}

    def test_transport_failure_fails_every_recipient(self):
        error = client_error("Throttling", "Maximum sending rate exceeded.", "SendEmail")
        result = MultiRecipientSender(FakeTransport(error)).send_with_recipients(
            PRIMARY, ["cc1@example.com", "cc2@example.com"], MESSAGE
        )

        assert not result.primary_succeeded
        assert result.error_category is ErrorCategory.THROTTLING
        assert result.cause is error
        assert [s.succeeded for s in result.recipient_statuses] == [False, False]
        assert all(s.error == str(error) for s in result.recipient_statuses)

    @given(secondary=st.lists(addresses, max_size=8), fail=st.booleans())
    def test_one_status_per_distinct_secondary(self, secondary, fail):
        transport = FakeTransport(RuntimeError("Connection reset") if fail else None)
        result = MultiRecipientSender(transport).send_with_recipients(PRIMARY, secondary, MESSAGE)

        expected = {a.strip().lower() for a in secondary} - {PRIMARY}
        reported = [s.address.lower() for s in result.recipient_statuses]
        assert sorted(reported) == sorted(expected)
        assert result.primary_succeeded is (not fail)
        if fail:
            assert not any(s.succeeded for s in result.recipient_statuses)
