from decimal import Decimal
from typing import Any

from .errors import ValidationError
from .money import percent_of, to_money, to_rate

MIN_RATE = Decimal("0")
MAX_RATE = Decimal("100")


class CommissionCalculator:
    """Turns a referral's base amount and an agent's rate into an earning amount.

    ``amount = round2(base * (agent_rate + bonus_rate) / 100)``, rounded half-up
    in integer cents so summing thousands of commissions never drifts.
    """

    def effective_rate(self, agent_commission_rate: Any, bonus_rate: Any = 0) -> Decimal:
        agent_rate = to_rate(agent_commission_rate, field="commission_rate")
        bonus = to_rate(bonus_rate, field="bonus_rate")
        if not MIN_RATE <= agent_rate <= MAX_RATE:
            raise ValidationError("commission_rate must be within [0, 100]", field="commission_rate")
        if bonus < 0:
            raise ValidationError("bonus_rate cannot be negative", field="bonus_rate")
        rate = agent_rate + bonus
        if rate > MAX_RATE:
            raise ValidationError("commission_rate plus bonus_rate cannot exceed 100", field="bonus_rate")
        return rate

    def compute(self, base_amount: Any, agent_commission_rate: Any, bonus_rate: Any = 0) -> Decimal:
        base = to_money(base_amount, field="base_amount")
        if base < 0:
            raise ValidationError("Referral base amount cannot be negative", field="base_amount")
        return percent_of(base, self.effective_rate(agent_commission_rate, bonus_rate))
