"""DeskGate models package.

Defines the data contracts shared by the admission controller, the upload
integrity pipeline and the gateway composition layer:

  - admission.py — RequestDescriptor, Decision
  - upload.py    — UploadCandidate, ReasonCode, ValidationVerdict
  - responses.py — HTTP 429 / HTTP 400 envelope builders and rate-limit headers
"""
