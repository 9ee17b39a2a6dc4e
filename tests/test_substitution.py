"""
DeployKit — Parameter Substitution Tests
=========================================

What we test:
    ✅ `${NAME}` references are found and replaced
    ✅ `$$` is a literal dollar
    ✅ `$[NAME]`, bare `$NAME`, unclosed and lowercase references are rejected
    ✅ Unknown names are rejected; missing values are all reported at once
"""

import pytest

from deploykit.exceptions import (
    MalformedReferenceError,
    MissingParameterError,
    UndeclaredParameterError,
)
from deploykit.substitution import (
    find_references,
    is_pure_reference,
    substitute,
    validate_references,
)


class TestFindReferences:

    def test_plain_text_has_no_references(self):
        assert find_references("/var/lib/postgresql/data") == []

    def test_references_in_order_without_duplicates(self):
        template = "pg_isready -U ${DB_USERNAME} -d ${DB_NAME} # ${DB_USERNAME}"
        assert find_references(template) == ["DB_USERNAME", "DB_NAME"]

    def test_escaped_dollar_is_not_a_reference(self):
        assert find_references("cost $$5 ${PORT}") == ["PORT"]

    @pytest.mark.parametrize(
        "template, fragment",
        [
            ("$[TEST_DB_CONTAINER_NAME]", "$[TEST_DB_CONTAINER_NAME]"),
            ("host=$DB_NAME", "$DB_NAME"),
            ("${DB_NAME", "${DB_NAME"),
            ("${}", "${}"),
            ("${db_name}", "${db_name}"),
            ("trailing $", "$"),
        ],
    )
    def test_malformed_references_rejected(self, template, fragment):
        with pytest.raises(MalformedReferenceError) as exc_info:
            find_references(template)
        assert exc_info.value.fragment == fragment
        assert exc_info.value.template == template

    def test_is_pure_reference(self):
        assert is_pure_reference("${DB_PASSWORD}")
        assert not is_pure_reference("x${DB_PASSWORD}")
        assert not is_pure_reference("hunter2")


class TestValidateReferences:

    def test_allowed_names_pass(self):
        assert validate_references("${PORT}:8080", {"PORT"}) == ["PORT"]

    def test_undeclared_name_rejected(self):
        with pytest.raises(UndeclaredParameterError) as exc_info:
            validate_references("${DB_HOST}", {"DB_NAME"})
        assert exc_info.value.name == "DB_HOST"


class TestSubstitute:

    def test_replaces_every_reference(self):
        result = substitute(
            "pg_isready -U ${DB_USERNAME} -d ${DB_NAME}",
            {"DB_USERNAME": "svc", "DB_NAME": "orders"},
        )
        assert result == "pg_isready -U svc -d orders"

    def test_escaped_dollar_kept_literal(self):
        assert substitute("$$HOME/${DB_NAME}", {"DB_NAME": "orders"}) == "$HOME/orders"

    def test_values_are_not_rescanned(self):
        assert substitute("${DB_PASSWORD}", {"DB_PASSWORD": "p$[x]"}) == "p$[x]"

    def test_all_missing_reported_together(self):
        with pytest.raises(MissingParameterError) as exc_info:
            substitute("${DB_NAME}/${DB_USERNAME}/${PORT}", {"PORT": "9090", "DB_NAME": ""})
        assert exc_info.value.names == ["DB_NAME", "DB_USERNAME"]

    def test_malformed_reference_not_passed_through(self):
        with pytest.raises(MalformedReferenceError):
            substitute("$[TEST_DB_CONTAINER_NAME]", {"TEST_DB_CONTAINER_NAME": "orders-test-db"})
