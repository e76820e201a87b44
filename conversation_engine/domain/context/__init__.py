# Context engineering for routed conversations
#
# +---------------------+        +---------------------+
# |     TurnStore       |        |   SessionState      |
# |---------------------|        |---------------------|
# | Ordered turns       |        | Status / phase      |
# | Archived flags      |        | Complexity, quality |
# | Feedback scores     |        | Engagement          |
# +---------------------+        +---------------------+
#            \                         /
#             \                       /
#              v                     v
# +------------------------------------------+
# |            ContextSelector               |
# |------------------------------------------|
# | Five scoring strategies, weighted        |
# | Ranked turn subset + confidence          |
# | Pattern / trend snapshot                 |
# +------------------------------------------+
#                     |
#                     v
#   [collaborator reply] -> FeedbackLoop -> RotationPolicy -> BufferFormatter
