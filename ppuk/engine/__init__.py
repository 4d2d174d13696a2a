"""PPUK engine — ambient services shared by every component."""
