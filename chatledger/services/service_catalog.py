"""
Service Catalog - static registry of the operations a message can map to.

Each ServiceDefinition carries the keywords and example phrasings used to
build the routing prompt, and the field schema the extracted fields are
validated against. The catalog is loaded at import time and never changes.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterator, Mapping, Optional, Tuple, Union

from chatledger.schemas.routing import ServiceId, ValidationResult

CATEGORIES = (
    "alimentação", "transporte", "contas", "saúde", "educação", "lazer", "salário", "outros",
)
TRANSACTION_TYPES = ("entrada", "saída")
PAYMENT_METHODS = ("crédito", "débito", "dinheiro", "pix")


@dataclass(frozen=True)
class FieldSpec:
    """Declared type and optional enum of one schema field."""

    type: str
    enum: Optional[Tuple[Any, ...]] = None
    description: str = ""

    def matches_type(self, value: Any) -> bool:
        if self.type == "string":
            return isinstance(value, str)
        if self.type == "number":
            # bool is an int subclass but never a valid amount
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if self.type == "boolean":
            return isinstance(value, bool)
        return True

    def to_json_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": self.type}
        if self.enum:
            schema["enum"] = list(self.enum)
        if self.description:
            schema["description"] = self.description
        return schema


@dataclass(frozen=True)
class ServiceDefinition:
    """One recognized operation kind."""

    id: ServiceId
    name: str
    description: str
    keywords: FrozenSet[str]
    examples: Tuple[str, ...]
    fields: Mapping[str, FieldSpec]
    required: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def optional(self) -> Dict[str, FieldSpec]:
        return {name: spec for name, spec in self.fields.items() if name not in self.required}

    def json_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {name: spec.to_json_schema() for name, spec in self.fields.items()},
            "required": [name for name in self.fields if name in self.required],
        }


TRANSACTION_SERVICE = ServiceDefinition(
    id=ServiceId.TRANSACTION,
    name="Transação Financeira",
    description="Registra uma transação financeira (gasto ou receita) no sistema.",
    keywords=frozenset({
        "comprei", "gastei", "paguei", "recebi", "ganhei", "despesa", "receita",
        "transação", "gasto", "entrada", "saída", "crédito", "débito",
        "almoço", "jantar", "combustível", "conta", "salário", "venda",
    }),
    examples=(
        "comprei um sanduiche por 50 reais",
        "gastei 25,50 no almoço hoje",
        "paguei R$ 100,00 de conta de luz",
        "recebi R$ 500,00 de salário",
    ),
    fields={
        "descricao": FieldSpec("string", description="Descrição da transação"),
        "valor": FieldSpec("number", description="Valor em reais"),
        "categoria": FieldSpec("string", enum=CATEGORIES),
        "tipo": FieldSpec("string", enum=TRANSACTION_TYPES),
        "metodo": FieldSpec("string", enum=PAYMENT_METHODS),
        "data": FieldSpec("string", description="Data no formato YYYY-MM-DD"),
    },
    required=frozenset({"descricao", "valor", "categoria", "tipo", "metodo"}),
)

SCHEDULE_SERVICE = ServiceDefinition(
    id=ServiceId.SCHEDULE,
    name="Agendamento Financeiro",
    description="Cria um agendamento para uma transação financeira futura.",
    keywords=frozenset({
        "agendar", "agendamento", "marcar", "programar", "futuro", "próximo",
        "mensal", "semanal", "recorrente", "parcela", "todo mês", "dia 5", "dia 10",
    }),
    examples=(
        "agendar pagamento de R$ 200 de aluguel para dia 5",
        "marcar conta de luz de R$ 150 para o próximo dia 10",
        "criar agendamento recorrente de R$ 500 de salário todo dia 1",
    ),
    fields={
        "descricao": FieldSpec("string"),
        "valor": FieldSpec("number"),
        "categoria": FieldSpec("string", enum=CATEGORIES),
        "tipo": FieldSpec("string", enum=TRANSACTION_TYPES),
        "metodo": FieldSpec("string", enum=PAYMENT_METHODS),
        "dataAgendamento": FieldSpec("string", description="Data no formato YYYY-MM-DD"),
        "recorrente": FieldSpec("boolean"),
        "totalParcelas": FieldSpec("number"),
        "frequencia": FieldSpec("string", enum=("mensal", "semanal", "anual")),
    },
    required=frozenset({"descricao", "valor", "categoria", "tipo", "metodo", "dataAgendamento"}),
)

QUERY_SERVICE = ServiceDefinition(
    id=ServiceId.QUERY,
    name="Consulta Financeira",
    description="Responde perguntas sobre o estado financeiro, histórico de transações, saldo, etc.",
    keywords=frozenset({
        "quanto", "quando", "quais", "onde", "como",
        "saldo", "gasto", "gastei", "recebi", "resumo", "estatística",
        "histórico", "extrato", "categoria", "mês", "semana", "hoje",
        "pendente", "agendamento", "próximo",
    }),
    examples=(
        "quanto gastei este mês?",
        "qual meu saldo atual?",
        "quais são meus agendamentos pendentes?",
        "quanto gastei com alimentação?",
    ),
    fields={
        "tipoConsulta": FieldSpec(
            "string",
            enum=("saldo", "resumo", "gastos_categoria", "agendamentos", "transacoes_periodo", "estatisticas"),
        ),
        "periodo": FieldSpec("string", enum=("hoje", "semana", "mes", "ano", "todos")),
        "categoria": FieldSpec("string", enum=CATEGORIES),
    },
    required=frozenset({"tipoConsulta"}),
)

SERVICE_DEFINITIONS: Tuple[ServiceDefinition, ...] = (
    TRANSACTION_SERVICE,
    SCHEDULE_SERVICE,
    QUERY_SERVICE,
)

# Fields of the safe default decision (treat the message as a question)
DEFAULT_QUERY_FIELDS: Dict[str, Any] = {"tipoConsulta": "resumo", "periodo": "mes"}


class ServiceCatalog:
    """Ordered, immutable collection of service definitions."""

    def __init__(self, definitions: Tuple[ServiceDefinition, ...] = SERVICE_DEFINITIONS):
        self._definitions = tuple(definitions)
        self._by_id = {definition.id.value: definition for definition in self._definitions}

    def __iter__(self) -> Iterator[ServiceDefinition]:
        return iter(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)

    @property
    def ids(self) -> Tuple[ServiceId, ...]:
        return tuple(definition.id for definition in self._definitions)

    def lookup(self, service_id: Union[str, ServiceId, None]) -> Optional[ServiceDefinition]:
        """Find a definition by id. Returns None for unknown ids."""
        if service_id is None:
            return None
        key = service_id.value if isinstance(service_id, ServiceId) else str(service_id)
        return self._by_id.get(key)

    def at_index(self, index: int) -> Optional[ServiceDefinition]:
        """Find a definition by its position in the catalog."""
        if isinstance(index, bool) or not isinstance(index, int):
            return None
        if 0 <= index < len(self._definitions):
            return self._definitions[index]
        return None

    def validate(self, service_id: Union[str, ServiceId], fields: Mapping[str, Any]) -> ValidationResult:
        """Validate extracted fields against a service schema.

        Checks, in order: required fields present and non-null, declared
        types, enum membership. Every violation is collected.
        """
        definition = self.lookup(service_id)
        if definition is None:
            return ValidationResult(valid=False, errors=[f'Service "{service_id}" not found'])

        errors = []
        for name in definition.fields:
            if name in definition.required and fields.get(name) is None:
                errors.append(f'Required field "{name}" is missing')

        for name, spec in definition.fields.items():
            value = fields.get(name)
            if value is None:
                continue
            if not spec.matches_type(value):
                errors.append(
                    f'Field "{name}" must be of type {spec.type}, got {type(value).__name__}'
                )
            if spec.enum and value not in spec.enum:
                allowed = ", ".join(str(option) for option in spec.enum)
                errors.append(f'Field "{name}" must be one of: {allowed}')

        return ValidationResult(valid=not errors, errors=errors)

    def describe(self) -> str:
        """Render the catalog section of the routing prompt."""
        blocks = []
        for index, definition in enumerate(self._definitions):
            blocks.append(
                f"**{definition.name}** (index: {index}, ID: {definition.id.value})\n"
                f"- Descrição: {definition.description}\n"
                f"- Palavras-chave: {', '.join(sorted(definition.keywords))}\n"
                f"- Exemplos: {'; '.join(definition.examples)}\n"
                f"- JSON esperado:\n{json.dumps(definition.json_schema(), ensure_ascii=False, indent=2)}"
            )
        return "\n---\n".join(blocks)


default_catalog = ServiceCatalog()
