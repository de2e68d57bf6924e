"""
Library modules of the zipinfo package.
"""
