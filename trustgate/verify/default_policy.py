DEFAULT_POLICY_CONTENT = """# Default trustgate policy
# Basic security baseline for OCI workloads.

package trustgate.policy

import rego.v1

default allow := false

deny contains msg if {
	input.config.User == ""
	msg := {
		"rule": "no-root-user",
		"severity": "high",
		"result": "fail",
		"message": "Container runs as root (no USER directive found)",
	}
}

deny contains msg if {
	input.config.User == "root"
	msg := {
		"rule": "no-root-user",
		"severity": "high",
		"result": "fail",
		"message": "Container explicitly runs as root",
	}
}

deny contains msg if {
	input.config.User == "0"
	msg := {
		"rule": "no-root-user",
		"severity": "high",
		"result": "fail",
		"message": "Container runs as UID 0 (root)",
	}
}

deny contains msg if {
	not input.sbom.present
	msg := {
		"rule": "sbom-required",
		"severity": "critical",
		"result": "fail",
		"message": "SBOM is required but not found",
	}
}

warn contains msg if {
	count(input.config.Labels) == 0
	msg := {
		"rule": "image-labels",
		"severity": "low",
		"result": "warn",
		"message": "Image has no labels (recommended for metadata)",
	}
}

deny contains msg if {
	input.promotion == true
	not input.attestation.present
	msg := {
		"rule": "attestation-required-for-promotion",
		"severity": "critical",
		"result": "fail",
		"message": "Attestation required for promotion but not found",
	}
}

allow if {
	count(deny) == 0
}

result := {
	"allow": allow,
	"violations": deny,
	"warnings": warn,
}
"""
