from app.models.repository import RepositorySnapshot, RepositoryFile  # noqa: F401
from app.models.analysis_run import AnalysisRun  # noqa: F401
from app.models.finding import Finding, FindingReview  # noqa: F401
from app.models.task import RemediationTask  # noqa: F401
from app.models.audit import AuditLog  # noqa: F401
