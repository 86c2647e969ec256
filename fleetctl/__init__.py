"""Self-healing fleet controller.

Keeps a fixed-size pool of stateless instances behind a load balancer healthy:
 - health probing with debounced, grace-period based failure detection
 - automatic repair (terminate and replace failed instances)
 - capacity reconciliation balanced across failure domains
 - backend registration that follows each instance's lifecycle
"""
