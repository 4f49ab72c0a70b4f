# Survey Mission Control - Simulation Package
# File: simulation/__init__.py

from simulation.mission_simulator import MissionSimulator
from simulation.registry import SimulationHandle, SimulationRegistry
from simulation.simulation_engine import SimulationEngine

__all__ = ['MissionSimulator', 'SimulationEngine', 'SimulationHandle', 'SimulationRegistry']
