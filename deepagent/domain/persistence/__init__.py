# Checkpoint = the serialized ConversationState of one thread.
#
# Everything required to resume the loop after a restart lives in it:
# message history, pending interrupts, the resumption token
# (iteration + interrupted call) and the optional summary.
#
#   save(thread_id, state)   overwrite, last writer wins
#   load(thread_id)          None when the thread was never saved
#   delete(thread_id)
#   list()
