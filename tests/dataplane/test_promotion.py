"""
Tests for the promotion decision of a Blue-Green rollout
"""

# Third Party
import pytest

# Local
from gateway_operator.dataplane import can_proceed_with_promotion
from gateway_operator.exceptions import ConfigError, UnknownPromotionStrategyError
from gateway_operator.test_helpers.helpers import make_dataplane


def promotion(strategy):
    return {"promotion": {"strategy": strategy}}


@pytest.mark.parametrize(
    ["blue_green", "promote_when_ready", "expected"],
    [
        [promotion("AutomaticPromotion"), False, True],
        [promotion("AutomaticPromotion"), True, True],
        [promotion("BreakBeforePromotion"), False, False],
        [promotion("BreakBeforePromotion"), True, True],
        [{}, False, False],
        [{}, True, True],
    ],
)
def test_can_proceed_with_promotion(blue_green, promote_when_ready, expected):
    """Make sure that only BreakBeforePromotion waits for the annotation and
    that it is the default strategy
    """
    dataplane = make_dataplane(
        blue_green=blue_green, promote_when_ready=promote_when_ready
    )
    assert can_proceed_with_promotion(dataplane) is expected


def test_annotation_must_be_true():
    """Make sure that any annotation value other than "true" holds the
    promotion
    """
    dataplane = make_dataplane(
        blue_green=promotion("BreakBeforePromotion"),
        metadata={
            "annotations": {"gateway-operator.konghq.com/promote-when-ready": "yes"}
        },
    )
    assert not can_proceed_with_promotion(dataplane)


def test_unknown_strategy():
    """Make sure that an unknown strategy is a configuration error"""
    dataplane = make_dataplane(blue_green=promotion("Sometimes"))
    with pytest.raises(UnknownPromotionStrategyError) as exc_info:
        can_proceed_with_promotion(dataplane)
    assert exc_info.value.strategy == "Sometimes"
    assert isinstance(exc_info.value, ConfigError)
