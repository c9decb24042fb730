from .pipeline import FilePreparer
from .models import PreparedFile, SourceFile, TaskStatus

__all__ = ["FilePreparer", "PreparedFile", "SourceFile", "TaskStatus"]
