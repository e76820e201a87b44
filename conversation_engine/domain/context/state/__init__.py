# Session state = everything needed to resume, continue or audit a session:
#
# Lifecycle status and the log of transitions that led there
#
# Derived metrics recomputed on every turn (phase, complexity, engagement)
#
# Running reply quality fed by the feedback loop
#
# Per-user continuity carried from closed sessions into new ones
