class GroundingError(Exception):
    """Base error for the grounding pipeline."""


class AccessibilityExtractionError(GroundingError):
    pass


class OverlayRenderError(GroundingError):
    pass


class ReplyParseError(GroundingError):
    pass
