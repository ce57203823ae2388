"""
Core subsystem.

Components:
- orchestrator.py: public facade (lifecycle, context, tasks, persistence wiring)
- events.py: event kinds, observer bus and fan-out streams
- state.py: snapshot / status / phase types
- state_manager.py: JSON snapshot store
- ports.py: Protocols the orchestrator depends on
"""
