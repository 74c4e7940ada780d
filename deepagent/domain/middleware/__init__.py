# Stage order, lowest first:
#
#   planning -> filesystem -> subagent -> summarization -> prompt_caching -> hitl -> custom
#
# before_model_call      rewrite/augment the request (never reorder history)
# after_model_response   replace the response
# before_tool_execution  rewrite the call or veto it with an Interrupt
# after_tool_execution   replace the result
