"""
Higher-level methods to provision and remove the service.

Each public function in this module should:

- perform a complete task, as needed by a script or user action
- decide what to do from the live host state rather than from earlier runs
- avoid non-idempotent calls unless required by a prior state change
"""
