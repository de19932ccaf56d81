from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from autotrade.data.candles import Candle
from autotrade.data.quotes import WatchedSymbol
from autotrade.strategy.contracts import StrategyConfig, StrategySignal
from autotrade.strategy.evaluators import EVALUATORS, Evaluator

LOGGER = logging.getLogger(__name__)

VETO_STRATEGY = "basic_momentum"


@dataclass(slots=True)
class BuyDecision:
    code: str
    buy: bool
    strategy: str | None
    signals: list[StrategySignal] = field(default_factory=list)
    vetoed: bool = False
    suppressed: list[str] = field(default_factory=list)

    @property
    def fired(self) -> list[StrategySignal]:
        return [signal for signal in self.signals if signal.fired]

    @property
    def reason(self) -> str:
        if self.buy and self.fired:
            return self.fired[0].reason
        if self.vetoed:
            return f"vetoed by {VETO_STRATEGY}; suppressed={','.join(self.suppressed) or '-'}"
        return "no strategy fired"


class StrategyRouter:
    """Runs enabled evaluators in order; basic momentum doubles as a veto.

    The veto only suppresses evaluators that come after it in the order. A
    signal raised earlier in the same pass is kept.
    """

    def __init__(self, evaluators: dict[str, Evaluator] | None = None):
        self._evaluators = dict(evaluators or EVALUATORS)

    def evaluate(
        self,
        symbol: WatchedSymbol,
        candles: list[Candle],
        config: StrategyConfig,
        now: datetime,
    ) -> BuyDecision:
        decision = BuyDecision(code=symbol.code, buy=False, strategy=None)
        for name in config.enabled_strategies:
            if decision.vetoed:
                decision.suppressed.append(name)
                continue
            if name == VETO_STRATEGY:
                delta = symbol.change_since_detection
                if delta < 0:
                    decision.vetoed = True
                    decision.signals.append(
                        StrategySignal(
                            strategy=name,
                            fired=False,
                            reason=f"veto change since detection {delta:.2f}%",
                            metadata={"change_since_detection": delta},
                        )
                    )
                    continue
            evaluator = self._evaluators.get(name)
            if evaluator is None:
                continue
            signal = evaluator(symbol, candles, config, now)
            decision.signals.append(signal)
        fired = decision.fired
        if fired:
            decision.buy = True
            decision.strategy = fired[0].strategy
        if decision.vetoed and decision.suppressed:
            LOGGER.debug(
                "Veto symbol=%s delta=%.2f suppressed=%s kept=%s",
                symbol.code,
                symbol.change_since_detection,
                decision.suppressed,
                [signal.strategy for signal in fired],
            )
        return decision
