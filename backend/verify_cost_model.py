from toon_engine.services.costs import CREDIT_PACKAGES, action_cost, get_package


def main() -> None:
    images = 4
    per_image = action_cost("basic_convert")
    assert per_image == 1, per_image
    assert per_image * images == 4

    try:
        action_cost("unknown_action")
    except ValueError:
        pass
    else:
        raise AssertionError("unknown actions must be rejected")

    pro = get_package("PRO")
    assert pro is not None and pro.total_credits == 70, pro
    assert get_package("platinum") is None

    bonuses = [pkg.bonus_credits for pkg in CREDIT_PACKAGES]
    assert bonuses == sorted(bonuses), bonuses

    print("OK")
    for pkg in CREDIT_PACKAGES:
        print(f"{pkg.name}: {pkg.total_credits} credits for {pkg.price_krw} KRW ({pkg.price_per_credit} KRW/credit)")


if __name__ == "__main__":
    main()
