# This module holds the state that outlives a single turn

# +---------------------+
# |   Context Store     |   (Durable, shared across crews)
# |---------------------|
# | user scope          |   seeker_profile, assessment_results...
# | conversation scope  |   per-conversation scratch state
# +---------------------+

# +---------------------+
# |   Conversation      |   (Current, serialized, turn-focused)
# |---------------------|
# | Active crew         |
# | Collected fields    |
# | Message history     |
# | Transition log      |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |      Runtime context         |   (Built per crew, per turn)
# |------------------------------|
# | Collected fields             |
# | Context store reads          |
# | Timestamp                    |
# +------------------------------+
#         |
#         v
#   [LLM adapter / tool handlers / transfer hooks]
