class RewardEngineError(Exception):
    pass


class ConfigurationError(RewardEngineError):
    """The engine was asked to calculate before a rule catalog was available."""


class MalformedConditionError(RewardEngineError, ValueError):
    pass


class CapUsagePersistenceConflict(RewardEngineError):
    def __init__(self, scope_id: str, period_key: object, attempts: int):
        super().__init__(
            f"Cap usage for scope '{scope_id}' ({period_key}) changed concurrently; "
            f"gave up after {attempts} attempt(s)"
        )
        self.scope_id = scope_id
        self.period_key = period_key
        self.attempts = attempts
