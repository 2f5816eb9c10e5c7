from __future__ import annotations

from dataclasses import dataclass


CREDIT_COSTS: dict[str, int] = {
    "basic_convert": 1,
    "premium_convert": 3,
    "episode_generate": 2,
}


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    bonus_credits: int
    price_krw: int

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus_credits

    @property
    def price_per_credit(self) -> int:
        return round(self.price_krw / max(1, self.credits))


CREDIT_PACKAGES: tuple[CreditPackage, ...] = (
    CreditPackage(id="starter", name="Starter", credits=10, bonus_credits=0, price_krw=1900),
    CreditPackage(id="basic", name="Basic", credits=30, bonus_credits=3, price_krw=4900),
    CreditPackage(id="pro", name="Pro", credits=60, bonus_credits=10, price_krw=9900),
    CreditPackage(id="mega", name="Mega", credits=150, bonus_credits=30, price_krw=19900),
)


def action_cost(action: str) -> int:
    try:
        return CREDIT_COSTS[action]
    except KeyError:
        raise ValueError(f"unknown_credit_action:{action}") from None


def get_package(package_id: str) -> CreditPackage | None:
    key = (package_id or "").strip().lower()
    for pkg in CREDIT_PACKAGES:
        if pkg.id == key:
            return pkg
    return None
