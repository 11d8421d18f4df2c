from __future__ import annotations

import pytest

from sqla_autocrud.errors import ValidationError
from sqla_autocrud.models import Comparison, Group, InList
from sqla_autocrud.parsing import parse_embedded_filters, parse_select
from sqla_autocrud.validation import IdentifierValidator, validate_mac_address, validate_network_address

from ..models import SCHEMA, StaticCatalog


customers = SCHEMA["customers"]


class TestIdentifiers:
    def test_table(self, validator: IdentifierValidator) -> None:
        assert validator.validate_table("customers") is customers

    @pytest.mark.parametrize("name", ["", "  ", "Customers", "customers; drop table x"])
    def test_unknown_table(self, validator: IdentifierValidator, name: str) -> None:
        with pytest.raises(ValidationError):
            validator.validate_table(name)

    def test_columns_are_case_sensitive(self, validator: IdentifierValidator) -> None:
        validator.validate_columns(["name", "email"], customers)

        with pytest.raises(ValidationError, match="Unknown column 'Name'"):
            validator.validate_columns(["Name"], customers)

    def test_predicate_leaves(self, validator: IdentifierValidator) -> None:
        ok = Group("or", (Comparison("age", "gt", "1"), InList("id", ("1",))))
        bad = Group("and", (ok, Comparison("salary", "gt", "1")))

        validator.validate_predicate(ok, customers)
        with pytest.raises(ValidationError, match="salary"):
            validator.validate_predicate(bad, customers)

    def test_select_with_embedded_filters(self, validator: IdentifierValidator) -> None:
        fields = parse_select("name,orders(total)")
        parse_embedded_filters(fields, {"orders.status": "eq.paid"})

        validator.validate_select(fields, customers)

    def test_select_with_bad_embedded_filter(self, validator: IdentifierValidator) -> None:
        fields = parse_select("name,orders(total)")
        parse_embedded_filters(fields, {"orders.colour": "eq.red"})

        with pytest.raises(ValidationError, match="colour"):
            validator.validate_select(fields, customers)


class TestValues:
    def test_filter_value_length(self) -> None:
        validator = IdentifierValidator(StaticCatalog(), max_value_length=3)  # type: ignore[arg-type]

        validator.validate_filter_value("abc")
        with pytest.raises(ValidationError):
            validator.validate_filter_value("abcd")

    def test_unterminated_quote(self, validator: IdentifierValidator) -> None:
        with pytest.raises(ValidationError, match="quote"):
            validator.validate_filter_value('"abc')

    @pytest.mark.parametrize("raw", ["(1,2", "1,2)", "()", "  "])
    def test_bad_in_lists(self, validator: IdentifierValidator, raw: str) -> None:
        with pytest.raises(ValidationError):
            validator.validate_in_list_values(raw)

    def test_pagination(self, validator: IdentifierValidator) -> None:
        validator.validate_pagination(0, 1000)

        with pytest.raises(ValidationError, match="Limit"):
            validator.validate_pagination(0, 1001)
        with pytest.raises(ValidationError, match="Offset"):
            validator.validate_pagination(-1, 10)

    def test_enum(self) -> None:
        validator = IdentifierValidator(StaticCatalog(enums={"mood": ["happy"]}))  # type: ignore[arg-type]

        assert validator.validate_enum_value("mood", "happy") == "happy"
        with pytest.raises(ValidationError, match="Valid values"):
            validator.validate_enum_value("mood", "sad")


class TestAddresses:
    @pytest.mark.parametrize("address", ["10.0.0.1", "10.0.0.0/8", "::1", "2001:db8::/32"])
    def test_network_ok(self, address: str) -> None:
        assert validate_network_address(f" {address} ") == address

    @pytest.mark.parametrize("address", ["", "10.0.0.256", "10.0.0.0/33", "host"])
    def test_network_bad(self, address: str) -> None:
        with pytest.raises(ValidationError):
            validate_network_address(address)

    @pytest.mark.parametrize(
        "address", ["08:00:2b:01:02:03", "08-00-2B-01-02-03", "08:00:2b:01:02:03:04:05"]
    )
    def test_mac_ok(self, address: str) -> None:
        assert validate_mac_address(address) == address

    @pytest.mark.parametrize("address", ["", "08:00:2b:01:02", "08:00:2b-01:02:03", "0800.2b01.0203"])
    def test_mac_bad(self, address: str) -> None:
        with pytest.raises(ValidationError):
            validate_mac_address(address)
