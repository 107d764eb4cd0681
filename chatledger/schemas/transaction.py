"""Transaction candidate schema."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class TransactionCandidate(BaseModel):
    """A transaction extracted from a message, awaiting user approval."""
    descricao: str = Field(..., min_length=1, description="Transaction description")
    valor: float = Field(..., gt=0, description="Amount")
    categoria: str = Field(default="outros", description="Category")
    tipo: str = Field(default="saída", description="entrada or saída")
    metodo: str = Field(default="débito", description="Payment method")
    data: Optional[str] = Field(None, description="Date as YYYY-MM-DD")
    carteira_nome: Optional[str] = Field(None, description="Wallet name")

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "TransactionCandidate":
        """Build a candidate from validated extracted fields."""
        known = {name: fields[name] for name in cls.model_fields if fields.get(name) is not None}
        return cls(**known)
