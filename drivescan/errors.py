class DrivescanError(Exception):
    pass

class ConfigError(DrivescanError):
    """Configuration that can't be run with. Raised at load or start time, never mid-collection."""
    pass

class ProbeFailure(DrivescanError):
    pass

class PersistenceFailure(DrivescanError):
    pass

class RadioException(DrivescanError):
    pass

class UploadException(DrivescanError):
    pass
