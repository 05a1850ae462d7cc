"""
Analysis payloads consumed by the signal generator.

Each payload carries a `kind` tag; the generator dispatches on it. An
AnalysisBundle groups every payload available for one token together
with the token's current price.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from core.exceptions import ValidationError
from core.models import SignalType

PREDICTION = "prediction"
TECHNICAL = "technical"
SENTIMENT = "sentiment"

STRONG_BUY = "STRONG_BUY"
STRONG_SELL = "STRONG_SELL"


@dataclass(frozen=True)
class PricePrediction:
    trend: str  # UP / DOWN
    confidence: float
    change_pct: float
    kind: str = PREDICTION


@dataclass(frozen=True)
class TechnicalSignal:
    type: SignalType
    confidence: float
    indicator: str = ""
    rationale: str = ""
    kind: str = TECHNICAL


@dataclass(frozen=True)
class SentimentReading:
    score: float
    recommendation: str  # STRONG_BUY / BUY / HOLD / SELL / STRONG_SELL
    kind: str = SENTIMENT


AnalysisItem = Union[PricePrediction, TechnicalSignal, SentimentReading]


@dataclass(frozen=True)
class AnalysisBundle:
    token_address: str
    price: float
    items: Tuple[AnalysisItem, ...] = ()

    def of_kind(self, kind: str) -> Tuple[AnalysisItem, ...]:
        return tuple(item for item in self.items if item.kind == kind)

    @classmethod
    def from_payload(cls, token_address: str, payload: Mapping[str, Any]) -> "AnalysisBundle":
        """
        Build a bundle from a plain mapping (YAML/JSON analysis feeds).

        Expected shape:
            price: 1.25
            prediction: {trend: UP, confidence: 0.8, change_pct: 7.5}
            technical: [{type: BUY, confidence: 0.75, indicator: rsi, rationale: "..."}]
            sentiment: {score: 0.7, recommendation: STRONG_BUY}
        """
        if not isinstance(payload, Mapping):
            raise ValidationError(
                f"analysis for {token_address} must be a mapping, got {type(payload).__name__}"
            )
        try:
            price = float(payload["price"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"analysis for {token_address} has no usable price", original=exc)

        items = []
        prediction = payload.get("prediction")
        if prediction:
            items.append(PricePrediction(
                trend=str(prediction.get("trend", "")).upper(),
                confidence=float(prediction.get("confidence", 0.0)),
                change_pct=float(prediction.get("change_pct", 0.0)),
            ))

        for entry in payload.get("technical") or ():
            if not isinstance(entry, Mapping):
                raise ValidationError(f"technical signal for {token_address} must be a mapping")
            side = str(entry.get("type", "")).upper()
            if side not in SignalType.__members__:
                raise ValidationError(f"technical signal for {token_address} has unknown type '{side}'")
            items.append(TechnicalSignal(
                type=SignalType(side),
                confidence=float(entry.get("confidence", 0.0)),
                indicator=str(entry.get("indicator", "")),
                rationale=str(entry.get("rationale", "")),
            ))

        sentiment = payload.get("sentiment")
        if sentiment:
            items.append(SentimentReading(
                score=float(sentiment.get("score", 0.0)),
                recommendation=str(sentiment.get("recommendation", "HOLD")).upper(),
            ))

        return cls(token_address=token_address, price=price, items=tuple(items))


def bundles_from_mapping(feed: Optional[Mapping[str, Mapping[str, Any]]]) -> Dict[str, AnalysisBundle]:
    """token_address -> payload mapping to token_address -> AnalysisBundle."""
    if not feed:
        return {}
    return {token: AnalysisBundle.from_payload(token, payload) for token, payload in feed.items()}
