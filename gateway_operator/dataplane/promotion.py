"""
Decide whether the preview resources of a DataPlane may be promoted to live
"""

# First Party
import alog

# Local
from ..constants import PromotionStrategy
from ..exceptions import UnknownPromotionStrategyError
from ..managed_object import DataPlane

log = alog.use_channel("PROMO")


def can_proceed_with_promotion(dataplane: DataPlane) -> bool:
    """Evaluate the promotion strategy of the DataPlane's Blue-Green rollout.

    AutomaticPromotion always allows the promotion. BreakBeforePromotion only
    allows it when the promote-when-ready annotation is "true". Clearing the
    annotation after the promotion is up to the caller.

    Args:
        dataplane:  DataPlane
            The DataPlane being rolled out

    Returns:
        proceed:  bool
            Whether the promotion may go ahead

    Raises:
        UnknownPromotionStrategyError: the strategy is not one of the above
    """
    strategy = dataplane.promotion_strategy
    if strategy == PromotionStrategy.AUTOMATIC.value:
        return True
    if strategy == PromotionStrategy.BREAK_BEFORE_PROMOTION.value:
        log.debug2(
            "%s promote-when-ready: %s", dataplane.name, dataplane.promote_when_ready
        )
        return dataplane.promote_when_ready
    raise UnknownPromotionStrategyError(strategy)
