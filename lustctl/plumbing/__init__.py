"""
Low-level APIs for fine-grained host management.

Each public function in this module should:

- perform a single action, idempotently if possible
- raise a `ProvisionError` on any failures
- accept collaborators (e.g. the service manager) as arguments rather than finding their own

Each function also falls into one of two groups:

- getters and predicates (return a value directly, do not modify state)
- actions (return a `Result` object, may modify state)
"""
