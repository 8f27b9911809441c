"""Pure goal/step state machine and the loop that drives it.

Everything in ``models`` and ``transitions`` is side-effect free: time and
randomness arrive through ``ExecutionContext`` so that a durable executor can
replay a goal from recorded contexts and land on the same state.  The only
impure piece is ``loop.Engine``, which calls the external agent executor.
"""
