"""
Signal generator

Turns an AnalysisBundle into zero or more trade Signals. Each payload kind
has its own gate; payloads that do not clear it produce nothing.

Gates:
- prediction: confidence > 0.7 and |predicted change| > min_move_pct
- technical:  confidence > 0.7
- sentiment:  score > 0.6 and a STRONG_BUY / STRONG_SELL recommendation
"""

import logging
from typing import Callable, Dict, List, Optional

from core.exceptions import ValidationError
from core.models import Signal, SignalSource, SignalType
from strategy.analysis import (
    PREDICTION,
    SENTIMENT,
    STRONG_BUY,
    STRONG_SELL,
    TECHNICAL,
    AnalysisBundle,
    AnalysisItem,
    PricePrediction,
    SentimentReading,
    TechnicalSignal,
)

logger = logging.getLogger(__name__)

PREDICTION_MIN_CONFIDENCE = 0.7
TECHNICAL_MIN_CONFIDENCE = 0.7
SENTIMENT_MIN_SCORE = 0.6
DEFAULT_MIN_MOVE_PCT = 5.0


class SignalGenerator:
    """Pure mapping from analysis payloads to Signals (only created_at varies)."""

    def __init__(self, sizer: Callable[[float], float], min_move_pct: float = DEFAULT_MIN_MOVE_PCT):
        """
        Args:
            sizer: token price -> trade amount (SignalValidator.compute_trade_amount)
            min_move_pct: minimum |change %| for prediction signals
        """
        self._sizer = sizer
        self.min_move_pct = min_move_pct
        self._handlers: Dict[str, Callable[[AnalysisBundle, AnalysisItem, float], Optional[Signal]]] = {
            PREDICTION: self._from_prediction,
            TECHNICAL: self._from_technical,
            SENTIMENT: self._from_sentiment,
        }

    def generate(self, bundle: AnalysisBundle) -> List[Signal]:
        if not bundle.items:
            return []

        amount = self._sizer(bundle.price)
        signals = []
        for item in bundle.items:
            handler = self._handlers.get(item.kind)
            if handler is None:
                raise ValidationError(f"unknown analysis kind '{item.kind}' for {bundle.token_address}")
            signal = handler(bundle, item, amount)
            if signal is not None:
                signals.append(signal)

        if signals:
            logger.info(
                f"Generated {len(signals)} signal(s) for {bundle.token_address[:8]}: "
                + ", ".join(f"{s.type.value}/{s.source.value}@{s.confidence:.2f}" for s in signals)
            )
        return signals

    def _from_prediction(self, bundle: AnalysisBundle, item: PricePrediction, amount: float) -> Optional[Signal]:
        if item.confidence <= PREDICTION_MIN_CONFIDENCE or abs(item.change_pct) <= self.min_move_pct:
            return None
        if item.trend == "UP":
            side = SignalType.BUY
        elif item.trend == "DOWN":
            side = SignalType.SELL
        else:
            logger.debug(f"Prediction for {bundle.token_address[:8]} has no direction ({item.trend!r})")
            return None
        return Signal(
            token_address=bundle.token_address,
            type=side,
            confidence=item.confidence,
            amount=amount,
            reason=f"Price prediction: {item.trend} {item.change_pct:+.2f}%",
            source=SignalSource.PREDICTION,
        )

    def _from_technical(self, bundle: AnalysisBundle, item: TechnicalSignal, amount: float) -> Optional[Signal]:
        if item.confidence <= TECHNICAL_MIN_CONFIDENCE:
            return None
        reason = item.rationale or f"Technical indicator {item.indicator}"
        return Signal(
            token_address=bundle.token_address,
            type=item.type,
            confidence=item.confidence,
            amount=amount,
            reason=reason,
            source=SignalSource.TECHNICAL,
        )

    def _from_sentiment(self, bundle: AnalysisBundle, item: SentimentReading, amount: float) -> Optional[Signal]:
        if item.score <= SENTIMENT_MIN_SCORE:
            return None
        if item.recommendation == STRONG_BUY:
            side = SignalType.BUY
        elif item.recommendation == STRONG_SELL:
            side = SignalType.SELL
        else:
            return None
        return Signal(
            token_address=bundle.token_address,
            type=side,
            confidence=item.score,
            amount=amount,
            reason=f"Sentiment {item.recommendation} ({item.score:.2f})",
            source=SignalSource.SENTIMENT,
        )
