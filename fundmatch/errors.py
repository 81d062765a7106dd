class FundmatchError(Exception):
    """Base class for errors raised by the matching pipeline."""


class ConfigurationError(FundmatchError):
    pass


class DelegationError(FundmatchError):
    """The worker could not be reached or refused the batch."""


class SimilarityUnavailable(FundmatchError):
    pass


class OrganizationNotEligible(FundmatchError):
    """Organization is missing a preference or a member."""


class NotificationError(FundmatchError):
    pass
