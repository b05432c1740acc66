"""
Labels put on daemon objects (containers, images, networks) owned by a run.
"""

LABEL_RUN_ID = "kiln.run-id"
LABEL_CONFIG_HASH = "kiln.config-hash"
LABEL_SSH_AUTH_PORT = "kiln.ssh-auth-port"
LABEL_BUILD_CONFIG_HASH = "kiln.build-config-hash"
