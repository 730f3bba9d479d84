"""
Handlers package - Contains the kopf event handlers of the Dex operator.

- dexserver.py: watches on DexServers, the resources derived from them and
  connector credential secrets; admitted events enqueue a convergence pass
"""
