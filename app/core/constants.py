"""
Constants
Centralised storage for webhook header names, image labels and component names.
"""
SIGNATURE_HEADER = "x-hub-signature-256"
SIGNATURE_PREFIX = "sha256="
DELIVERY_HEADER = "x-github-delivery"
EVENT_HEADER = "x-github-event"
BRANCH_REF_PREFIX = "refs/heads/"
ZERO_SHA = "0" * 40

BACKEND = "backend"
FRONTEND = "frontend"
COMPONENTS = (BACKEND, FRONTEND)

IMAGE_LABELS = {"project": "staging-pipeline"}
DEFAULT_TARGET = "staging"
