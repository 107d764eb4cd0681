"""
Tests for the service catalog.

Tests cover:
- Lookup by id and by position
- Validation order and error collection
- Prompt rendering
"""

import pytest

from chatledger.schemas.routing import ServiceId
from chatledger.services.service_catalog import (
    DEFAULT_QUERY_FIELDS,
    ServiceCatalog,
    default_catalog,
)


@pytest.fixture
def catalog():
    return ServiceCatalog()


VALID_TRANSACTION = {
    "descricao": "almoço",
    "valor": 45.5,
    "categoria": "alimentação",
    "tipo": "saída",
    "metodo": "pix",
}


# =============================================================================
# Lookup
# =============================================================================

class TestLookup:
    """Tests for finding service definitions."""

    def test_lookup_by_string_and_enum(self, catalog):
        assert catalog.lookup("transaction").id == ServiceId.TRANSACTION
        assert catalog.lookup(ServiceId.SCHEDULE).id == ServiceId.SCHEDULE

    def test_lookup_unknown_returns_none(self, catalog):
        assert catalog.lookup("transfer") is None
        assert catalog.lookup(None) is None

    def test_at_index_follows_catalog_order(self, catalog):
        assert catalog.at_index(0).id == ServiceId.TRANSACTION
        assert catalog.at_index(2).id == ServiceId.QUERY

    def test_at_index_out_of_range(self, catalog):
        assert catalog.at_index(3) is None
        assert catalog.at_index(-1) is None
        assert catalog.at_index(True) is None

    def test_default_catalog_ids(self):
        assert default_catalog.ids == (ServiceId.TRANSACTION, ServiceId.SCHEDULE, ServiceId.QUERY)

    def test_optional_fields_exclude_required(self, catalog):
        definition = catalog.lookup("transaction")
        assert set(definition.optional) == {"data"}


# =============================================================================
# Validation
# =============================================================================

class TestValidate:
    """Tests for field validation against a service schema."""

    def test_valid_transaction(self, catalog):
        result = catalog.validate("transaction", VALID_TRANSACTION)
        assert result.valid
        assert result.errors == []

    def test_string_amount_is_type_error(self, catalog):
        """A string amount is reported; the description is not."""
        result = catalog.validate("transaction", {"descricao": "x", "valor": "50"})

        assert not result.valid
        assert any('"valor"' in error and "number" in error and "str" in error for error in result.errors)
        assert not any('"descricao"' in error for error in result.errors)

    def test_collects_every_violation(self, catalog):
        result = catalog.validate(
            "transaction",
            {"descricao": 12, "valor": 10, "categoria": "viagem", "tipo": "saída"},
        )

        assert 'Required field "metodo" is missing' in result.errors
        assert any('"descricao" must be of type string' in error for error in result.errors)
        assert any('"categoria" must be one of' in error for error in result.errors)
        assert len(result.errors) == 3

    def test_null_required_field_is_missing(self, catalog):
        fields = dict(VALID_TRANSACTION, valor=None)
        result = catalog.validate("transaction", fields)
        assert result.errors == ['Required field "valor" is missing']

    def test_boolean_is_not_a_number(self, catalog):
        result = catalog.validate("transaction", dict(VALID_TRANSACTION, valor=True))
        assert not result.valid

    def test_boolean_field_type(self, catalog):
        fields = {
            "descricao": "aluguel",
            "valor": 1200,
            "categoria": "contas",
            "tipo": "saída",
            "metodo": "pix",
            "dataAgendamento": "2024-02-05",
            "recorrente": "sim",
        }
        result = catalog.validate("schedule", fields)
        assert result.errors == ['Field "recorrente" must be of type boolean, got str']

    def test_unknown_service(self, catalog):
        result = catalog.validate("transfer", {})
        assert not result.valid
        assert result.errors == ['Service "transfer" not found']

    def test_default_query_fields_are_valid(self, catalog):
        assert catalog.validate("query", DEFAULT_QUERY_FIELDS).valid


# =============================================================================
# Prompt rendering
# =============================================================================

class TestDescribe:

    def test_describe_lists_every_service(self, catalog):
        text = catalog.describe()
        for index, definition in enumerate(catalog):
            assert f"index: {index}, ID: {definition.id.value}" in text
        assert "tipoConsulta" in text
