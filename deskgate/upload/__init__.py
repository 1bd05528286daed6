"""Upload integrity pipeline: tables, stages, and multipart reading."""

from deskgate.upload.pipeline import STAGES, UploadPipeline, UploadRules

__all__ = ["STAGES", "UploadPipeline", "UploadRules"]
