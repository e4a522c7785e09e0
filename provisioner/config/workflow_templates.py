"""
Workflow Templates Configuration
Declares the site templates a tenant can be provisioned from and the ordered,
weighted workflow steps each of them runs.
Used by the step catalogue to build WorkflowTemplate objects, which also back the
template listing endpoint.
"""

# Step names, in canonical order
VALIDATE_SUBDOMAIN = "validate-subdomain"
REGISTER_DNS = "register-dns"
SCAFFOLD_SITE_CONTENT = "scaffold-site-content"
REQUEST_EXTERNAL_DEPLOY = "request-external-deploy"
AWAIT_DEPLOY_CONFIRMATION = "await-deploy-confirmation"
VERIFY_DOMAIN_SSL = "verify-domain-ssl"
SEND_WELCOME_NOTIFICATION = "send-welcome-notification"

CANONICAL_STEPS = [
    VALIDATE_SUBDOMAIN,
    REGISTER_DNS,
    SCAFFOLD_SITE_CONTENT,
    REQUEST_EXTERNAL_DEPLOY,
    AWAIT_DEPLOY_CONFIRMATION,
    VERIFY_DOMAIN_SSL,
    SEND_WELCOME_NOTIFICATION,
]

DEFAULT_TEMPLATE = "modern-blog"

# Progress weight per step; each template must sum to 100
TEMPLATES = {
    "modern-blog": {
        "description": "Modern responsive blog with hero header and card grid",
        "steps": [
            (VALIDATE_SUBDOMAIN, 5),
            (REGISTER_DNS, 15),
            (SCAFFOLD_SITE_CONTENT, 20),
            (REQUEST_EXTERNAL_DEPLOY, 15),
            (AWAIT_DEPLOY_CONFIRMATION, 20),
            (VERIFY_DOMAIN_SSL, 15),
            (SEND_WELCOME_NOTIFICATION, 10),
        ],
    },
    "magazine": {
        "description": "Multi-column magazine layout with category sections",
        # Larger content scaffold and a longer build
        "steps": [
            (VALIDATE_SUBDOMAIN, 5),
            (REGISTER_DNS, 10),
            (SCAFFOLD_SITE_CONTENT, 25),
            (REQUEST_EXTERNAL_DEPLOY, 10),
            (AWAIT_DEPLOY_CONFIRMATION, 30),
            (VERIFY_DOMAIN_SSL, 10),
            (SEND_WELCOME_NOTIFICATION, 10),
        ],
    },
    "minimal-blog": {
        "description": "Single-column minimal blog",
        "steps": [
            (VALIDATE_SUBDOMAIN, 10),
            (REGISTER_DNS, 15),
            (SCAFFOLD_SITE_CONTENT, 10),
            (REQUEST_EXTERNAL_DEPLOY, 15),
            (AWAIT_DEPLOY_CONFIRMATION, 20),
            (VERIFY_DOMAIN_SSL, 20),
            (SEND_WELCOME_NOTIFICATION, 10),
        ],
    },
}

# Labels for the step log
STEP_LABELS = {
    VALIDATE_SUBDOMAIN: "Validating subdomain availability",
    REGISTER_DNS: "Configuring domain and DNS",
    SCAFFOLD_SITE_CONTENT: "Generating tenant site from template",
    REQUEST_EXTERNAL_DEPLOY: "Requesting build and deploy",
    AWAIT_DEPLOY_CONFIRMATION: "Waiting for deploy confirmation",
    VERIFY_DOMAIN_SSL: "Verifying domain and SSL certificate",
    SEND_WELCOME_NOTIFICATION: "Finalizing deployment",
}

# Subdomains never handed out to tenants
RESERVED_SUBDOMAINS = {
    "www", "api", "admin", "app", "mail", "smtp", "ftp", "blog",
    "static", "cdn", "assets", "dashboard", "status", "docs", "support",
}
