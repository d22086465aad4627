"""Redirect Operator

Watches Redirect resources, publishes an Ingress for each one that routes its
hosts to this operator, and answers those requests with permanent redirects.
"""

__version__ = '0.1.0'
