"""
Portal service package for the Secrets Portal.

HTTP surface over the core components:

- app.models: request and response models.
- app.secrets: secrets CRUD with permission checks and audit writes.
- app.main: composition root; builds stores, vault and dispatcher once and
  injects them into every component.

Guidelines:
- Identity arrives already verified (group names and user id headers).
- Value updates always re-arm rotation reminders.
"""
