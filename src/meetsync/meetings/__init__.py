"""Meeting synchronization module -- state machine, store, host allocation.

Keeps provider-side meetings converged with the desired state stored on
events and sessions: the dequeuer hands out one unit of work per
transaction, the sync workers call the provider, and the outcome recorder
writes the result back. Provider adapters live in providers/, the worker
loops in sync/.
"""
