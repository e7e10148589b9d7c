"""
Error kinds raised by the protected-coverage pipeline

Each error records the pipeline stage it came from and the identifiers
(watershed ids, config keys, species) it implicates, so a failed run can
report exactly where it stopped.
"""


class CoveragePipelineError(Exception):
    """Base class for pipeline errors"""

    def __init__(self, message, stage=None, identifiers=None):
        super().__init__(message)
        self.stage = stage
        self.identifiers = list(identifiers) if identifiers is not None else []

    def describe(self):
        """One-line description including stage and identifiers"""
        parts = [str(self)]
        if self.stage:
            parts.insert(0, f"[{self.stage}]")
        if self.identifiers:
            shown = ', '.join(str(i) for i in self.identifiers[:10])
            if len(self.identifiers) > 10:
                shown += f", ... ({len(self.identifiers)} total)"
            parts.append(f"ids: {shown}")
        return ' '.join(parts)


class DataQualityError(CoveragePipelineError):
    """Unrepairable geometry or missing spatial join key"""


class JoinIntegrityError(CoveragePipelineError):
    """A join dropped or duplicated records it should not have"""


class ConfigurationError(CoveragePipelineError):
    """A configuration value is missing, out of range or inconsistent"""
