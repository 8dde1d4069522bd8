"""Configuration file schema for SecretOps CLI."""

NAME_PATTERN = r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$"
KEY_PATTERN = r"^[-._a-zA-Z0-9]+$"

REFERENCE_SCHEMA = {
    "type": "object",
    "properties": {
        "bundle": {"type": "string", "pattern": NAME_PATTERN},
        "key": {"type": "string", "pattern": KEY_PATTERN},
        "env": {"type": "string"},
    },
    "required": ["bundle", "key"],
    "additionalProperties": False,
}

BUNDLE_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "pattern": NAME_PATTERN},
        "type": {
            "type": "string",
            "enum": ["generic", "registry-auth", "basic-auth", "ssh-auth"],
        },
        "manifest": {
            "type": "string",
            "description": "Path to a Kubernetes Secret manifest, relative to the manifests directory",
        },
        "keys": {
            "type": "object",
            "propertyNames": {"pattern": KEY_PATTERN},
            "additionalProperties": {"type": ["string", "number", "boolean"]},
        },
        "templates": {
            "type": "object",
            "propertyNames": {"pattern": KEY_PATTERN},
            "additionalProperties": {"type": "string"},
            "description": "Keys rendered from the other keys with Jinja2",
        },
        "generate": {
            "type": "object",
            "propertyNames": {"pattern": KEY_PATTERN},
            "additionalProperties": {
                "type": "string",
                "enum": ["password", "api-key", "jwt-secret", "hex"],
            },
            "description": "Keys filled in on create and regenerated on 'rotate --generate'",
        },
    },
    "required": ["name"],
    "additionalProperties": False,
}

WORKLOAD_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "pattern": NAME_PATTERN},
        "kind": {
            "type": "string",
            "enum": ["deployment", "statefulset", "daemonset"],
            "default": "deployment",
        },
        "tier": {"type": "string", "enum": ["data", "consumer"], "default": "consumer"},
        "references": {"type": "array", "items": REFERENCE_SCHEMA},
    },
    "required": ["name"],
    "additionalProperties": False,
}

BACKEND_SCHEMA = {
    "type": "object",
    "properties": {
        "type": {
            "type": "string",
            "enum": ["kubernetes", "vault", "file", "memory"],
            "default": "kubernetes",
        },
        "kubernetes": {
            "type": "object",
            "properties": {
                "kubectl": {"type": "string"},
                "context": {"type": "string"},
                "timeout": {"type": "integer", "minimum": 1},
            },
            "additionalProperties": False,
        },
        "vault": {
            "type": "object",
            "properties": {
                "url": {"type": "string"},
                "token_env": {"type": "string"},
                "mount_point": {"type": "string"},
                "path_prefix": {"type": "string"},
                "verify": {"type": ["boolean", "string"]},
            },
            "additionalProperties": False,
        },
        "file": {
            "type": "object",
            "properties": {
                "directory": {"type": "string"},
                "key_file": {"type": "string"},
            },
            "additionalProperties": False,
        },
    },
    "required": ["type"],
    "additionalProperties": False,
}

VAULT_BOOTSTRAP_SCHEMA = {
    "type": "object",
    "properties": {
        "url": {"type": "string"},
        "namespace": {"type": "string"},
        "pod": {"type": "string"},
        "mount_point": {"type": "string"},
        "path_prefix": {"type": "string"},
        "key_shares": {"type": "integer", "minimum": 1},
        "key_threshold": {"type": "integer", "minimum": 1},
        "init_file": {"type": "string"},
        "init_key_file": {"type": "string"},
        "kubernetes_host": {"type": "string"},
        "kubernetes_ca_cert_file": {"type": "string"},
        "token_reviewer_jwt_file": {"type": "string"},
        "policy": {"type": "string"},
        "role": {"type": "string"},
        "service_account": {"type": "string"},
        "ttl": {"type": "string", "pattern": r"^\d+[smh]$"},
    },
    "additionalProperties": False,
}

MAIN_CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "secretops": {
            "type": "object",
            "properties": {
                "namespace": {"type": "string", "pattern": NAME_PATTERN},
                "manifests_dir": {"type": "string"},
                "backend": BACKEND_SCHEMA,
                "retry": {
                    "type": "object",
                    "properties": {
                        "attempts": {"type": "integer", "minimum": 1, "default": 3},
                        "initial_delay": {"type": "number", "minimum": 0, "default": 1.0},
                        "max_delay": {"type": "number", "minimum": 0},
                    },
                    "additionalProperties": False,
                },
                "rollout": {
                    "type": "object",
                    "properties": {
                        "timeout": {"type": "number", "minimum": 1, "default": 300},
                        "poll_interval": {"type": "number", "minimum": 0, "default": 5},
                    },
                    "additionalProperties": False,
                },
                "audit": {
                    "type": "object",
                    "properties": {"log_file": {"type": "string"}},
                    "additionalProperties": False,
                },
            },
            "required": ["namespace", "backend"],
            "additionalProperties": False,
        },
        "bundles": {"type": "array", "items": BUNDLE_SCHEMA},
        "workloads": {"type": "array", "items": WORKLOAD_SCHEMA},
        "vault": VAULT_BOOTSTRAP_SCHEMA,
    },
    "required": ["secretops"],
    "additionalProperties": False,
}
