"""The web app stack: nginx in front of redis on a private bridge network."""
from __future__ import annotations

from .declaration import Declaration, StackConfig
from .graph import Component, FileUpload, Kind, Ref, Resource, StackGraph

NGINX_CONF_PATH = "/etc/nginx/nginx.conf"
INDEX_HTML_PATH = "/usr/share/nginx/html/index.html"
REDIS_INTERNAL_PORT = 6379


def render_nginx_conf() -> str:
    return """
events {
    worker_connections 1024;
}

http {
    upstream redis_backend {
        server redis:6379;
    }

    server {
        listen 80;
        location / {
            root /usr/share/nginx/html;
            index index.html;
        }

        location /health {
            access_log off;
            return 200 "healthy\\n";
            add_header Content-Type text/plain;
        }
    }
}"""


def render_index_html(config: StackConfig) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <title>Docker Stack Demo - {config.name}</title>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 40px; background: #f5f5f5; }}
        .container {{ background: white; padding: 20px; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); }}
        .header {{ color: #2563eb; border-bottom: 2px solid #2563eb; padding-bottom: 10px; }}
        .info {{ margin: 20px 0; padding: 15px; background: #eff6ff; border-radius: 4px; }}
    </style>
</head>
<body>
    <div class="container">
        <h1 class="header">Docker Stack Demo</h1>
        <div class="info">
            <h2>Stack: {config.name}</h2>
            <p><strong>Port:</strong> {config.base_port}</p>
            <p><strong>Redis Port:</strong> {config.secondary_port}</p>
            <p><strong>Status:</strong> Running</p>
        </div>
        <p>This Nginx server is running in a Docker container managed by stackrec.</p>
        <p>Redis is available at: redis:{REDIS_INTERNAL_PORT} (internal network)</p>
        <p><a href="/health">Health Check</a></p>
    </div>
</body>
</html>"""


def build(config: StackConfig) -> Declaration:
    """Declare the network, both images and both containers for one stack."""
    name = config.name
    graph = StackGraph(name)

    graph.add_resource(
        Resource(
            name="network",
            kind=Kind.NETWORK,
            props={"name": f"webapp-network-{name}", "driver": "bridge"},
        )
    )
    graph.add_resource(
        Resource(
            name="redis-image",
            kind=Kind.IMAGE,
            props={"name": "redis:7-alpine", "keep_locally": True},
        )
    )
    graph.add_resource(
        Resource(
            name="redis",
            kind=Kind.CONTAINER,
            props={
                "name": f"redis-{name}",
                "image": Ref("redis-image", "id"),
                "networks": [{"name": Ref("network", "name"), "aliases": ["redis"]}],
                "ports": [{"internal": REDIS_INTERNAL_PORT, "external": config.secondary_port}],
                "restart": "unless-stopped",
            },
        )
    )
    graph.add_resource(
        Resource(
            name="nginx-image",
            kind=Kind.IMAGE,
            props={"name": "nginx:alpine", "keep_locally": True},
        )
    )
    graph.add_resource(
        Resource(
            name="nginx",
            kind=Kind.CONTAINER,
            props={
                "name": f"nginx-{name}",
                "image": Ref("nginx-image", "id"),
                "networks": [{"name": Ref("network", "name")}],
                "ports": [{"internal": 80, "external": config.base_port}],
                "env": ["REDIS_HOST=redis", f"STACK_NAME={name}", f"PORT={config.base_port}"],
                "restart": "unless-stopped",
            },
            files=[
                FileUpload(NGINX_CONF_PATH, render_nginx_conf()),
                FileUpload(INDEX_HTML_PATH, render_index_html(config)),
            ],
        )
    )

    component = Component(f"webapp-{name}", ("network", "redis", "nginx"))
    outputs = {
        "nginx_url": f"http://localhost:{config.base_port}",
        "redis_port": config.redis_port,
        "stack_info": {
            "name": name,
            "nginx_container": Ref("nginx", "name"),
            "redis_container": Ref("redis", "name"),
            "network_id": Ref("network", "id"),
        },
    }
    return Declaration(config, graph, outputs, [component])
