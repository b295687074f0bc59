"""
Cloud Application Protection Service Broker

An Open Service Broker (v2.12/2.13) that provisions and binds a web
application firewall offering through its upstream provisioning API.
"""

__version__ = "0.1.0"
__author__ = "CAP Broker"
