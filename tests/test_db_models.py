"""
Tests for db_models.py - request validation and record helpers.
"""

import pytest
from pydantic import ValidationError

from conftest import at
from db_models import AddContactRequest, ContactRecord, IdentifyRequest, LinkPrecedence


class TestIdentifyRequest:
    def test_email_and_phone(self):
        request = IdentifyRequest(email="doc@hillvalley.edu", phoneNumber="123456")

        assert request.email == "doc@hillvalley.edu"
        assert request.phoneNumber == "123456"

    def test_values_kept_verbatim(self):
        request = IdentifyRequest(email="Doc@HillValley.edu")

        assert request.email == "Doc@HillValley.edu"

    def test_integer_phone_coerced(self):
        assert IdentifyRequest(phoneNumber=123456).phoneNumber == "123456"

    def test_empty_string_treated_as_missing(self):
        request = IdentifyRequest(email="", phoneNumber="123456")

        assert request.email is None

    @pytest.mark.parametrize("payload", [
        {},
        {"email": None, "phoneNumber": None},
        {"email": "", "phoneNumber": ""},
    ])
    def test_requires_one_value(self, payload):
        with pytest.raises(ValidationError):
            IdentifyRequest(**payload)

    @pytest.mark.parametrize("email", ["plain", "a@b", "a b@x.com", "@x.com"])
    def test_invalid_email(self, email):
        with pytest.raises(ValidationError):
            IdentifyRequest(email=email)

    def test_boolean_phone_rejected(self):
        with pytest.raises(ValidationError):
            IdentifyRequest(phoneNumber=True)


class TestAddContactRequest:
    def test_defaults_to_primary(self):
        assert AddContactRequest(email="a@x.com").linkPrecedence == LinkPrecedence.PRIMARY

    def test_primary_with_link_rejected(self):
        with pytest.raises(ValidationError):
            AddContactRequest(email="a@x.com", linkedId=1)

    def test_secondary_without_link_rejected(self):
        with pytest.raises(ValidationError):
            AddContactRequest(email="a@x.com", linkPrecedence="secondary")


class TestContactRecord:
    def test_anchor_id(self):
        primary = ContactRecord(id=1, linkPrecedence="primary", createdAt=at(0), updatedAt=at(0))
        secondary = ContactRecord(id=2, linkedId=1, linkPrecedence="secondary",
                                  createdAt=at(1), updatedAt=at(1))

        assert primary.is_primary
        assert primary.anchor_id == 1
        assert not secondary.is_primary
        assert secondary.anchor_id == 1

    def test_parses_stored_timestamps(self):
        record = ContactRecord(
            id=1,
            linkPrecedence="primary",
            createdAt="2023-04-01T12:00:00.000000",
            updatedAt="2023-04-01T12:00:00.000000",
        )

        assert record.createdAt == at(0)


class TestAddContactCreatedAt:
    def test_future_created_at_rejected(self):
        with pytest.raises(ValidationError):
            AddContactRequest(email="a@x.com", createdAt="2999-01-01T00:00:00")

    def test_future_aware_created_at_rejected(self):
        with pytest.raises(ValidationError):
            AddContactRequest(email="a@x.com", createdAt="2999-01-01T00:00:00+00:00")

    def test_past_created_at_accepted(self):
        request = AddContactRequest(email="a@x.com", createdAt="2023-04-01T12:00:00")

        assert request.createdAt == at(0)
