import time
import unittest
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from pollboard.db import PollRecord
from pollboard.validation import (
    CommentRequest,
    CreatePollRequest,
    EmailRequest,
    MagicLinkVerifyRequest,
    PasswordUpdateRequest,
    PollFilter,
    ProfileUpdateRequest,
    RegisterRequest,
    UpdatePollRequest,
    VoteRequest,
    can_user_vote,
    check_rate_limit,
    create_audit_log,
    is_poll_expired,
    sanitize_html,
    validate_content_security,
    validate_password_strength,
    validate_poll_ownership,
)

POLL_ID = "6f1c2a9e-3b7d-4c55-9e0a-1d2b3c4d5e6f"


def _first_message(exc: ValidationError) -> str:
    return exc.errors()[0]["msg"].removeprefix("Value error, ")


def _poll_payload(**overrides):
    payload = {
        "title": "Favorite language",
        "description": "Pick the one you use most",
        "options": [{"id": 1, "text": "Python"}, {"id": 2, "text": "Rust"}],
    }
    payload.update(overrides)
    return payload


class SanitizeTests(unittest.TestCase):
    def test_sanitize_html_strips_tags_and_trims(self):
        self.assertEqual(sanitize_html("  <b>Hello</b> world "), "Hello world")

    def test_content_security_flags_markers(self):
        self.assertTrue(validate_content_security("Plain text").ok)
        result = validate_content_security("<iframe src=x>")
        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "Potential XSS content detected")
        result = validate_content_security("1 OR 1=1")
        self.assertEqual(result.reason, "Potential SQL injection detected")


class CreatePollRequestTests(unittest.TestCase):
    def test_valid_payload_uses_defaults(self):
        request = CreatePollRequest.model_validate(_poll_payload())
        self.assertTrue(request.is_public)
        self.assertFalse(request.allows_multiple_votes)
        self.assertIsNone(request.expires_at_timestamp)
        self.assertEqual(
            request.options_payload(),
            [{"id": 1, "text": "Python"}, {"id": 2, "text": "Rust"}],
        )

    def test_accepts_camel_case_flags(self):
        request = CreatePollRequest.model_validate(
            _poll_payload(isPublic=False, allowsMultipleVotes=True)
        )
        self.assertFalse(request.is_public)
        self.assertTrue(request.allows_multiple_votes)

    def test_title_is_sanitized(self):
        request = CreatePollRequest.model_validate(
            _poll_payload(title="<em>Lunch</em> plans")
        )
        self.assertEqual(request.title, "Lunch plans")

    def test_rejects_empty_title(self):
        with self.assertRaises(ValidationError) as ctx:
            CreatePollRequest.model_validate(_poll_payload(title="   "))
        self.assertEqual(_first_message(ctx.exception), "Poll title is required")

    def test_rejects_script_markers(self):
        with self.assertRaises(ValidationError) as ctx:
            CreatePollRequest.model_validate(_poll_payload(title="javascript:alert(1)"))
        self.assertEqual(_first_message(ctx.exception), "Invalid content detected")

    def test_rejects_injection_characters(self):
        with self.assertRaises(ValidationError) as ctx:
            CreatePollRequest.model_validate(_poll_payload(title="a; DROP TABLE polls"))
        self.assertEqual(_first_message(ctx.exception), "Invalid characters detected")

    def test_rejects_too_few_options(self):
        with self.assertRaises(ValidationError) as ctx:
            CreatePollRequest.model_validate(
                _poll_payload(options=[{"id": 1, "text": "Only"}])
            )
        self.assertEqual(
            _first_message(ctx.exception), "Poll must have at least 2 options"
        )

    def test_rejects_too_many_options(self):
        options = [{"id": i, "text": f"Option {i}"} for i in range(1, 12)]
        with self.assertRaises(ValidationError) as ctx:
            CreatePollRequest.model_validate(_poll_payload(options=options))
        self.assertEqual(
            _first_message(ctx.exception), "Poll cannot have more than 10 options"
        )

    def test_rejects_duplicate_option_text_ignoring_case(self):
        options = [{"id": 1, "text": "Yes"}, {"id": 2, "text": "yes"}]
        with self.assertRaises(ValidationError) as ctx:
            CreatePollRequest.model_validate(_poll_payload(options=options))
        self.assertEqual(
            _first_message(ctx.exception),
            "Poll options must be unique (case-insensitive)",
        )

    def test_rejects_duplicate_option_ids(self):
        options = [{"id": 1, "text": "Yes"}, {"id": 1, "text": "No"}]
        with self.assertRaises(ValidationError) as ctx:
            CreatePollRequest.model_validate(_poll_payload(options=options))
        self.assertEqual(_first_message(ctx.exception), "Option IDs must be unique")

    def test_rejects_option_id_out_of_range(self):
        options = [{"id": 1, "text": "Yes"}, {"id": 10001, "text": "No"}]
        with self.assertRaises(ValidationError) as ctx:
            CreatePollRequest.model_validate(_poll_payload(options=options))
        self.assertEqual(_first_message(ctx.exception), "Option ID too large")

    def test_expiry_window(self):
        soon = datetime.now(timezone.utc) + timedelta(minutes=1)
        with self.assertRaises(ValidationError):
            CreatePollRequest.model_validate(_poll_payload(expiresAt=soon.isoformat()))

        later = datetime.now(timezone.utc) + timedelta(days=2)
        request = CreatePollRequest.model_validate(
            _poll_payload(expiresAt=later.isoformat())
        )
        self.assertAlmostEqual(request.expires_at_timestamp, later.timestamp(), places=3)

        too_late = datetime.now(timezone.utc) + timedelta(days=400)
        with self.assertRaises(ValidationError):
            CreatePollRequest.model_validate(
                _poll_payload(expiresAt=too_late.isoformat())
            )


class UpdatePollRequestTests(unittest.TestCase):
    def test_requires_at_least_one_field(self):
        with self.assertRaises(ValidationError) as ctx:
            UpdatePollRequest.model_validate({})
        self.assertEqual(
            _first_message(ctx.exception),
            "At least one field must be provided for update",
        )

    def test_changes_only_includes_sent_fields(self):
        request = UpdatePollRequest.model_validate({"title": "New title", "isPublic": False})
        self.assertEqual(request.changes(), {"title": "New title", "is_public": False})

    def test_rejects_null_title(self):
        with self.assertRaises(ValidationError) as ctx:
            UpdatePollRequest.model_validate({"title": None})
        self.assertEqual(_first_message(ctx.exception), "title cannot be null")


class VoteRequestTests(unittest.TestCase):
    def test_valid_vote(self):
        request = VoteRequest.model_validate({"pollId": POLL_ID, "optionIds": [1, 3]})
        self.assertEqual(request.poll_id, POLL_ID)
        self.assertEqual(request.option_ids, [1, 3])

    def test_rejects_bad_poll_id(self):
        with self.assertRaises(ValidationError) as ctx:
            VoteRequest.model_validate({"pollId": "not-a-uuid", "optionIds": [1]})
        self.assertEqual(_first_message(ctx.exception), "Invalid poll ID format")

    def test_rejects_empty_selection(self):
        with self.assertRaises(ValidationError) as ctx:
            VoteRequest.model_validate({"pollId": POLL_ID, "optionIds": []})
        self.assertEqual(
            _first_message(ctx.exception), "At least one option must be selected"
        )

    def test_rejects_duplicate_selection(self):
        with self.assertRaises(ValidationError) as ctx:
            VoteRequest.model_validate({"pollId": POLL_ID, "optionIds": [2, 2]})
        self.assertEqual(
            _first_message(ctx.exception),
            "Cannot vote for the same option multiple times",
        )

    def test_rejects_non_positive_option(self):
        with self.assertRaises(ValidationError) as ctx:
            VoteRequest.model_validate({"pollId": POLL_ID, "optionIds": [0]})
        self.assertEqual(_first_message(ctx.exception), "Invalid option ID")

    def test_rejects_too_many_options(self):
        with self.assertRaises(ValidationError) as ctx:
            VoteRequest.model_validate(
                {"pollId": POLL_ID, "optionIds": list(range(1, 52))}
            )
        self.assertEqual(
            _first_message(ctx.exception), "Cannot select more than 50 options"
        )


class PollFilterTests(unittest.TestCase):
    def test_defaults(self):
        filters = PollFilter.model_validate({})
        self.assertEqual(filters.status, "all")
        self.assertEqual(filters.page, 1)
        self.assertEqual(filters.limit, 20)
        self.assertEqual(filters.offset, 0)
        self.assertEqual(filters.sort_by, "created_at")
        self.assertEqual(filters.sort_order, "desc")

    def test_closed_means_expired(self):
        filters = PollFilter.model_validate({"status": "closed"})
        self.assertEqual(filters.status, "expired")

    def test_parses_query_strings(self):
        filters = PollFilter.model_validate(
            {"page": "3", "limit": "10", "isPublic": "false", "sortBy": "votes_count"}
        )
        self.assertEqual(filters.offset, 20)
        self.assertIs(filters.is_public, False)
        self.assertEqual(filters.sort_by, "votes_count")

    def test_rejects_out_of_range_values(self):
        with self.assertRaises(ValidationError):
            PollFilter.model_validate({"limit": "101"})
        with self.assertRaises(ValidationError):
            PollFilter.model_validate({"page": "0"})
        with self.assertRaises(ValidationError):
            PollFilter.model_validate({"sortBy": "random"})

    def test_rejects_bad_creator(self):
        with self.assertRaises(ValidationError) as ctx:
            PollFilter.model_validate({"createdBy": "someone"})
        self.assertEqual(_first_message(ctx.exception), "Invalid user ID format")


class AccountRequestTests(unittest.TestCase):
    def test_email_is_normalized(self):
        request = EmailRequest.model_validate({"email": "  Alice@Example.COM "})
        self.assertEqual(request.email, "alice@example.com")

    def test_email_is_validated(self):
        with self.assertRaises(ValidationError):
            EmailRequest.model_validate({"email": "not-an-email"})

    def test_register_password_minimum(self):
        with self.assertRaises(ValidationError) as ctx:
            RegisterRequest.model_validate(
                {"email": "a@example.com", "password": "12345"}
            )
        self.assertEqual(
            _first_message(ctx.exception),
            "Password must be at least 6 characters long",
        )

    def test_register_allows_apostrophes_in_names(self):
        request = RegisterRequest.model_validate(
            {"email": "a@example.com", "password": "secret1", "fullName": "Dana O'Neil"}
        )
        self.assertEqual(request.full_name, "Dana O'Neil")

    def test_magic_link_token_length(self):
        with self.assertRaises(ValidationError):
            MagicLinkVerifyRequest.model_validate({"token": "short"})
        MagicLinkVerifyRequest.model_validate({"token": "x" * 32})

    def test_password_update_checks(self):
        with self.assertRaises(ValidationError) as ctx:
            PasswordUpdateRequest.model_validate(
                {"password": "Str0ng!pass", "confirmPassword": "other"}
            )
        self.assertEqual(_first_message(ctx.exception), "Passwords do not match")

        with self.assertRaises(ValidationError) as ctx:
            PasswordUpdateRequest.model_validate(
                {"password": "weakpass", "confirmPassword": "weakpass"}
            )
        self.assertIn("uppercase", _first_message(ctx.exception))

        PasswordUpdateRequest.model_validate(
            {"password": "Str0ng!pass", "confirmPassword": "Str0ng!pass"}
        )

    def test_profile_avatar_must_be_http(self):
        with self.assertRaises(ValidationError) as ctx:
            ProfileUpdateRequest.model_validate({"avatarUrl": "ftp://example.com/a.png"})
        self.assertEqual(
            _first_message(ctx.exception), "Only HTTP and HTTPS URLs are allowed"
        )

    def test_comment_must_not_be_empty(self):
        with self.assertRaises(ValidationError) as ctx:
            CommentRequest.model_validate({"content": "<p> </p>"})
        self.assertEqual(_first_message(ctx.exception), "Comment cannot be empty")


class BusinessRuleTests(unittest.TestCase):
    def _poll(self, **overrides):
        fields = dict(
            id=POLL_ID,
            title="Lunch",
            description=None,
            options=[{"id": 1, "text": "Tacos"}, {"id": 2, "text": "Ramen"}],
            creator_id="owner",
        )
        fields.update(overrides)
        return PollRecord(**fields)

    def test_password_strength_lists_every_problem(self):
        self.assertEqual(len(validate_password_strength("")), 5)
        self.assertEqual(validate_password_strength("Str0ng!pass"), [])

    def test_rate_limit_thresholds(self):
        self.assertTrue(check_rate_limit("u", "create_poll", 9).ok)
        denied = check_rate_limit("u", "create_poll", 10)
        self.assertFalse(denied.ok)
        self.assertEqual(
            denied.reason,
            "Rate limit exceeded. Maximum 10 create_poll actions per 60 minutes",
        )
        self.assertTrue(check_rate_limit("u", "vote", 99).ok)
        self.assertFalse(check_rate_limit("u", "something_else", 10).ok)

    def test_expiry(self):
        now = time.time()
        self.assertFalse(is_poll_expired(None, now))
        self.assertTrue(is_poll_expired(now - 1, now))
        self.assertFalse(is_poll_expired(now + 60, now))

    def test_can_user_vote(self):
        now = time.time()
        self.assertTrue(can_user_vote(self._poll(), False, now).ok)
        self.assertEqual(
            can_user_vote(self._poll(), True, now).reason,
            "You have already voted on this poll",
        )
        self.assertTrue(can_user_vote(self._poll(allows_multiple_votes=True), True, now).ok)
        self.assertEqual(
            can_user_vote(self._poll(expires_at=now - 5), False, now).reason,
            "Poll has expired",
        )

    def test_poll_ownership(self):
        self.assertTrue(validate_poll_ownership(self._poll(), "owner").ok)
        self.assertFalse(validate_poll_ownership(self._poll(), "someone").ok)

    def test_audit_log_truncates_user_agent(self):
        entry = create_audit_log("u", "vote", "1.2.3.4", "x" * 600, POLL_ID)
        self.assertEqual(len(entry.user_agent), 500)
        self.assertEqual(entry.resource_id, POLL_ID)
        self.assertTrue(entry.timestamp.endswith("+00:00"))

    def test_audit_log_rejects_unknown_action(self):
        with self.assertRaises(ValueError):
            create_audit_log("u", "explode", "1.2.3.4", "agent")


if __name__ == "__main__":
    unittest.main()
