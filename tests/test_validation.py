"""Tests for response-node reply validation."""
from flows.validation import GENERIC_ERROR, validate_response, validation_error_message
from models.schemas import ExpectedResponse, ResponseChoice, ResponseValidation


def _expected(type_: str = "any", **rules) -> ExpectedResponse:
    return ExpectedResponse(type=type_, validation=ResponseValidation(**rules))


class TestValidateResponse:
    def test_required_rejects_blank(self):
        assert not validate_response("   ", _expected())
        assert validate_response("", _expected(required=False))

    def test_length_limits(self):
        expected = _expected("text", min_length=3, max_length=5)
        assert not validate_response("ab", expected)
        assert validate_response("abcd", expected)
        assert not validate_response("abcdef", expected)

    def test_pattern(self):
        expected = _expected("text", pattern=r"^\d{6}$")
        assert validate_response("560001", expected)
        assert not validate_response("5600", expected)

    def test_invalid_pattern_rejects(self):
        assert not validate_response("x", _expected("text", pattern="(["))

    def test_number(self):
        assert validate_response(" 42.5 ", _expected("number"))
        assert not validate_response("forty", _expected("number"))
        assert not validate_response("nan", _expected("number"))

    def test_email(self):
        assert validate_response("a@b.co", _expected("email"))
        assert not validate_response("a@b", _expected("email"))

    def test_phone_ignores_separators(self):
        assert validate_response("+91 (98765) 43210", _expected("phone"))
        assert not validate_response("0123", _expected("phone"))

    def test_media_requires_attachment(self):
        assert validate_response("", _expected("media"), has_media=True)
        assert not validate_response("a caption", _expected("media"), has_media=False)


class TestValidationErrorMessage:
    def test_choice_lists_options(self):
        expected = ExpectedResponse(type="choice", choices=[ResponseChoice(value="1"),
                                                            ResponseChoice(value="2")])
        assert validation_error_message(expected) == \
            "Please choose one of the following options: 1, 2"

    def test_min_length(self):
        assert validation_error_message(_expected("text", min_length=4)) == \
            "Please enter at least 4 characters."

    def test_pattern(self):
        assert validation_error_message(_expected("text", pattern="x")) == \
            "Please enter a valid format."

    def test_generic(self):
        assert validation_error_message(_expected("email")) == GENERIC_ERROR
