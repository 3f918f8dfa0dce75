# -*- coding: utf-8 -*-
from .process import ManagedProcess, ProcessSnapshot, ProcessSpec, ProcessState
from .supervisor import Supervisor

__all__ = ["ManagedProcess", "ProcessSnapshot", "ProcessSpec", "ProcessState", "Supervisor"]
