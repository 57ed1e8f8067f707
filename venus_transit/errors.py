class VenusTransitError(Exception):
    """Base class for errors raised by the transit timing core."""


class InvalidInputError(VenusTransitError, ValueError):
    """A caller passed a value the core refuses to act on."""


class InvalidTimeError(InvalidInputError):
    pass


class InvalidSpeedError(InvalidInputError):
    pass


class InvalidElementsError(InvalidInputError):
    pass
