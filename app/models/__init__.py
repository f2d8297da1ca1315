from app.models.migration import (  # noqa: F401
    MigrationCredential,
    MigrationErrorKind,
    MigrationJob,
    MigrationJobError,
    MigrationSource,
    MigrationStage,
)
from app.models.records import (  # noqa: F401
    CrmContact,
    CrmDocument,
    CrmJob,
    CrmTask,
    JobStatus,
)
