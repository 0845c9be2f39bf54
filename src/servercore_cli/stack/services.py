"""Nextcloud service topology and its secrets."""

from __future__ import annotations

from ..config import ServercoreConfig
from ..provisioning.secrets import SecretSpec
from ..provisioning.topology import EnvRef, HealthCheckSpec, SecretRef, ServiceSpec, ServiceTopology

NETWORK = "nextcloud-network"

# Secret key -> shape. Lengths match the entropy of the base64 values the
# stack was first deployed with; the alphabet avoids characters that need
# quoting in compose files and shell commands.
SECRET_SPECS: dict[str, SecretSpec] = {
    "db_root": SecretSpec(length=43),
    "db_password": SecretSpec(length=43),
    "admin_password": SecretSpec(length=22),
    "cache_auth": SecretSpec(length=32),
    "office_jwt": SecretSpec(length=43),
}

# Secret key -> variable name in the compose env file
SECRET_ENV: dict[str, str] = {
    "db_root": "MARIADB_ROOT_PASSWORD",
    "db_password": "MARIADB_PASSWORD",
    "admin_password": "NEXTCLOUD_ADMIN_PASSWORD",
    "cache_auth": "REDIS_PASSWORD",
    "office_jwt": "ONLYOFFICE_JWT_SECRET",
}

DATABASE_NAME = "nextcloud"
DATABASE_USER = "nextcloud"


def plain_env(config: ServercoreConfig) -> dict[str, str]:
    """Non-secret variables of the env file."""
    return {
        "NEXTCLOUD_ADMIN_USER": config.nextcloud_admin,
        "NEXTCLOUD_TRUSTED_DOMAINS": config.domain,
        "MARIADB_DATABASE": DATABASE_NAME,
        "MARIADB_USER": DATABASE_USER,
        "COMPOSE_PROJECT_NAME": config.project_name,
        "TZ": config.timezone,
    }


def build_topology(config: ServercoreConfig) -> ServiceTopology:
    """The five-container Nextcloud stack."""
    mariadb = ServiceSpec(
        name="mariadb",
        image="mariadb:10.11",
        container_name="nextcloud-mariadb",
        environment={
            "MARIADB_ROOT_PASSWORD": SecretRef("db_root"),
            "MARIADB_PASSWORD": SecretRef("db_password"),
            "MARIADB_DATABASE": EnvRef("MARIADB_DATABASE"),
            "MARIADB_USER": EnvRef("MARIADB_USER"),
            "TZ": EnvRef("TZ"),
        },
        volumes=["./data/mariadb:/var/lib/mysql"],
        networks=[NETWORK],
        command=(
            "--innodb-buffer-pool-size=512M --transaction-isolation=READ-COMMITTED "
            "--binlog-format=ROW --innodb-file-per-table=1 --skip-innodb-read-only-compressed"
        ),
        healthcheck=HealthCheckSpec(test=["CMD", "healthcheck.sh", "--connect", "--innodb_initialized"]),
    )
    redis = ServiceSpec(
        name="redis",
        image="redis:7-alpine",
        container_name="nextcloud-redis",
        command="redis-server --requirepass ${REDIS_PASSWORD} --maxmemory 256mb --maxmemory-policy allkeys-lru",
        volumes=["./data/redis:/data"],
        networks=[NETWORK],
        healthcheck=HealthCheckSpec(
            test=["CMD-SHELL", 'redis-cli -a "$$REDIS_PASSWORD" --no-auth-warning ping | grep -q PONG'],
            timeout="5s",
        ),
        environment={"REDIS_PASSWORD": SecretRef("cache_auth")},
    )
    app = ServiceSpec(
        name="nextcloud-app",
        image="nextcloud:latest",
        container_name="nextcloud-app",
        environment={
            "MYSQL_HOST": "mariadb",
            "MYSQL_DATABASE": EnvRef("MARIADB_DATABASE"),
            "MYSQL_USER": EnvRef("MARIADB_USER"),
            "MYSQL_PASSWORD": SecretRef("db_password"),
            "NEXTCLOUD_ADMIN_USER": EnvRef("NEXTCLOUD_ADMIN_USER"),
            "NEXTCLOUD_ADMIN_PASSWORD": SecretRef("admin_password"),
            "NEXTCLOUD_TRUSTED_DOMAINS": EnvRef("NEXTCLOUD_TRUSTED_DOMAINS"),
            "REDIS_HOST": "redis",
            "REDIS_HOST_PASSWORD": SecretRef("cache_auth"),
            "OVERWRITEPROTOCOL": "https",
            "OVERWRITEHOST": EnvRef("NEXTCLOUD_TRUSTED_DOMAINS"),
            "PHP_MEMORY_LIMIT": "512M",
            "PHP_UPLOAD_LIMIT": "2048M",
            "APACHE_DISABLE_REWRITE_IP": "1",
            "TZ": EnvRef("TZ"),
        },
        volumes=["./data/nextcloud:/var/www/html"],
        networks=[NETWORK],
        depends_on={"mariadb": "service_healthy", "redis": "service_healthy"},
        healthcheck=HealthCheckSpec(
            test=["CMD", "curl", "-f", "http://localhost/status.php"], start_period="300s"
        ),
    )
    proxy = ServiceSpec(
        name="nginx-proxy",
        image="nginx:alpine",
        container_name="nextcloud-nginx",
        ports=["80:80", "443:443"],
        volumes=[
            "./nginx/nginx.conf:/etc/nginx/nginx.conf:ro",
            "./nginx/ssl:/etc/nginx/ssl:ro",
            "./data/nextcloud:/var/www/html:ro",
            "./logs/nginx:/var/log/nginx",
        ],
        networks=[NETWORK],
        depends_on={"nextcloud-app": "service_healthy", "onlyoffice": "service_started"},
        healthcheck=HealthCheckSpec(test=["CMD", "nginx", "-t"], timeout="5s"),
    )
    office = ServiceSpec(
        name="onlyoffice",
        image="onlyoffice/documentserver",
        container_name="onlyoffice",
        environment={
            "JWT_ENABLED": "true",
            "JWT_SECRET": SecretRef("office_jwt"),
            "JWT_HEADER": "Authorization",
            "JWT_IN_BODY": "true",
            "TZ": EnvRef("TZ"),
        },
        volumes=[
            "./data/onlyoffice:/var/www/onlyoffice/Data",
            "./config/onlyoffice/local.json:/etc/onlyoffice/documentserver/local.json:ro",
        ],
        networks=[NETWORK],
        healthcheck=HealthCheckSpec(
            test=["CMD", "curl", "-f", "http://localhost/healthcheck"], start_period="300s"
        ),
    )

    return ServiceTopology(
        project_name=config.project_name,
        services=[mariadb, redis, app, proxy, office],
        networks={
            NETWORK: {
                "driver": "bridge",
                "driver_opts": {"com.docker.network.bridge.name": "nextcloud-br0"},
            }
        },
        secret_env=dict(SECRET_ENV),
    )
