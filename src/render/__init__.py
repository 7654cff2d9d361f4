"""
Command-line runner that regenerates the Salt state from the pillar.
"""
