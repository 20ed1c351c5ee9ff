"""
LXC CLI module.

Command line front end that drives a running console server over HTTP.
"""
