# Reasoning core
#
#  request -> Reasoner -> ThoughtStore (persist + notify)
#                 |            ^
#                 v            |
#             TaskQueue -> ToolRegistry -> Tool
#
#  scheduler -> Reasoner.process_cycle:
#      drain tasks -> evaluate guides -> suggestions
