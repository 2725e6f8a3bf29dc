"""
Workflow engine — graph traversal, node processors and the run coordinator.

Documents move through a workflow graph one node at a time; each node
kind has a processor, and the coordinator persists every step so a run
can be inspected, resumed and reconciled later.
"""
