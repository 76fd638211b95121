"""
Reference three-tier topology: the n8n workflow-automation container.

Three units, each consuming the one before it through cross-unit inputs:

- network:    VPC with public and private subnets and a NAT gateway
- filesystem: encrypted shared file system with mount targets and an
              access point owned by uid/gid 1000
- compute:    container cluster, task role scoped to the file system,
              task definition mounting the access point, public load
              balancer, Fargate Spot service and CPU/memory autoscaling

Usage:
    units = n8n_topology()
    orchestrator = DeploymentOrchestrator(units, provider, store)
    await orchestrator.apply_all()
"""

from typing import Optional

from pydantic import BaseModel, Field

from stackplan.models.resources import DeploymentUnit, InputRef, UnitOutputRef, ref

NETWORK_UNIT = "network"
FILESYSTEM_UNIT = "filesystem"
COMPUTE_UNIT = "compute"

NFS_PORT = 2049
DATA_VOLUME = "n8n-data"
DATA_PATH = "/home/node/.n8n"


class N8nTopologyConfig(BaseModel):
    """Tunable values of the reference topology."""

    cidr_block: str = "10.0.0.0/16"
    availability_zones: list[str] = Field(default_factory=lambda: ["a", "b"])
    image: str = "n8nio/n8n"
    container_port: int = 5678
    listener_port: int = 80
    cpu: int = 1024
    memory_mib: int = 2048
    desired_count: int = 1
    min_capacity: int = 0
    max_capacity: int = 2
    cpu_target_percent: int = 50
    memory_target_percent: int = 50
    scale_cooldown_seconds: int = 60
    posix_uid: str = "1000"
    posix_gid: str = "1000"


def _subnet_cidr(config: N8nTopologyConfig, index: int) -> str:
    # 10.0.0.0/16 -> 10.0.<index>.0/24
    first, second = config.cidr_block.split(".")[:2]
    return f"{first}.{second}.{index}.0/24"


# =============================================================================
# Network
# =============================================================================


def network_unit(config: Optional[N8nTopologyConfig] = None) -> DeploymentUnit:
    config = config or N8nTopologyConfig()
    unit = DeploymentUnit(name=NETWORK_UNIT)

    unit.add("vpc", "network", cidr_block=config.cidr_block, enable_dns_hostnames=True)

    for index, zone in enumerate(config.availability_zones):
        unit.add(
            f"public-{zone}",
            "subnet",
            network_id=ref("vpc.id"),
            cidr_block=_subnet_cidr(config, index),
            availability_zone=zone,
            map_public_ip=True,
        )
    for index, zone in enumerate(config.availability_zones):
        unit.add(
            f"private-{zone}",
            "subnet",
            network_id=ref("vpc.id"),
            cidr_block=_subnet_cidr(config, len(config.availability_zones) + index),
            availability_zone=zone,
            map_public_ip=False,
        )

    unit.add("nat", "nat-gateway", subnet_id=ref(f"public-{config.availability_zones[0]}.id"))
    return unit


# =============================================================================
# File system
# =============================================================================


def filesystem_unit(config: Optional[N8nTopologyConfig] = None) -> DeploymentUnit:
    config = config or N8nTopologyConfig()
    unit = DeploymentUnit(
        name=FILESYSTEM_UNIT,
        cross_unit_inputs={
            "network_id": UnitOutputRef(unit=NETWORK_UNIT, node="vpc", output="id"),
            "network_cidr": UnitOutputRef(unit=NETWORK_UNIT, node="vpc", output="cidr_block"),
            **{
                f"private_subnet_{zone}": UnitOutputRef(
                    unit=NETWORK_UNIT, node=f"private-{zone}", output="id"
                )
                for zone in config.availability_zones
            },
        },
    )

    unit.add(
        "efs-sg",
        "security-group",
        network_id=InputRef(name="network_id"),
        description="Security group for N8N EFS",
        allow_all_outbound=True,
        ingress=[
            {
                "cidr": InputRef(name="network_cidr"),
                "port": NFS_PORT,
                "protocol": "tcp",
                "description": "Allow NFS access from within VPC",
            }
        ],
    )
    unit.add(
        "efs",
        "file-system",
        network_id=InputRef(name="network_id"),
        security_group_ids=[ref("efs-sg.id")],
        performance_mode="generalPurpose",
        throughput_mode="bursting",
        encrypted=True,
        removal_policy="retain",
    )
    for zone in config.availability_zones:
        unit.add(
            f"mount-{zone}",
            "mount-target",
            file_system_id=ref("efs.id"),
            subnet_id=InputRef(name=f"private_subnet_{zone}"),
            security_group_ids=[ref("efs-sg.id")],
        )
    unit.add(
        "access-point",
        "access-point",
        file_system_id=ref("efs.id"),
        path="/n8n-data",
        create_acl={
            "owner_uid": config.posix_uid,
            "owner_gid": config.posix_gid,
            "permissions": "755",
        },
        posix_user={"uid": config.posix_uid, "gid": config.posix_gid},
    )
    return unit


# =============================================================================
# Compute
# =============================================================================


def compute_unit(config: Optional[N8nTopologyConfig] = None) -> DeploymentUnit:
    config = config or N8nTopologyConfig()
    zones = config.availability_zones
    unit = DeploymentUnit(
        name=COMPUTE_UNIT,
        cross_unit_inputs={
            "network_id": UnitOutputRef(unit=NETWORK_UNIT, node="vpc", output="id"),
            **{
                f"public_subnet_{zone}": UnitOutputRef(
                    unit=NETWORK_UNIT, node=f"public-{zone}", output="id"
                )
                for zone in zones
            },
            **{
                f"private_subnet_{zone}": UnitOutputRef(
                    unit=NETWORK_UNIT, node=f"private-{zone}", output="id"
                )
                for zone in zones
            },
            "file_system_id": UnitOutputRef(unit=FILESYSTEM_UNIT, node="efs", output="id"),
            "file_system_arn": UnitOutputRef(unit=FILESYSTEM_UNIT, node="efs", output="arn"),
            "access_point_id": UnitOutputRef(unit=FILESYSTEM_UNIT, node="access-point", output="id"),
        },
    )
    public_subnets = [InputRef(name=f"public_subnet_{zone}") for zone in zones]
    private_subnets = [InputRef(name=f"private_subnet_{zone}") for zone in zones]

    unit.add("cluster", "cluster", name="n8n-cluster", container_insights=True)

    # Task role gets client access to this one file system only
    unit.add(
        "task-role",
        "iam-role",
        assumed_by="ecs-tasks.amazonaws.com",
        policy_statements=[
            {
                "actions": [
                    "elasticfilesystem:ClientMount",
                    "elasticfilesystem:ClientWrite",
                    "elasticfilesystem:ClientRootAccess",
                ],
                "resources": [InputRef(name="file_system_arn")],
            }
        ],
    )
    unit.add("logs", "log-group", name="/ecs/n8n", stream_prefix="n8n")
    unit.add(
        "task-definition",
        "task-definition",
        cpu=config.cpu,
        memory_mib=config.memory_mib,
        task_role_arn=ref("task-role.arn"),
        volumes=[
            {
                "name": DATA_VOLUME,
                "efs": {
                    "file_system_id": InputRef(name="file_system_id"),
                    "transit_encryption": "ENABLED",
                    "access_point_id": InputRef(name="access_point_id"),
                    "iam": "ENABLED",
                },
            }
        ],
        containers=[
            {
                "name": "n8n",
                "image": config.image,
                "environment": {
                    "N8N_BASIC_AUTH_ACTIVE": "true",
                    "N8N_PROTOCOL": "http",
                    "N8N_PORT": str(config.container_port),
                    "N8N_SECURE_COOKIE": "false",
                    "DB_TYPE": "sqlite",
                    "DB_SQLITE_PATH": f"{DATA_PATH}/database.sqlite",
                },
                "port_mappings": [{"container_port": config.container_port, "protocol": "tcp"}],
                "mount_points": [
                    {"source_volume": DATA_VOLUME, "container_path": DATA_PATH, "read_only": False}
                ],
                "log_group": ref("logs.id"),
            }
        ],
    )

    unit.add(
        "alb-sg",
        "security-group",
        network_id=InputRef(name="network_id"),
        description="Security group for N8N ALB",
        allow_all_outbound=True,
        ingress=[
            {"cidr": "0.0.0.0/0", "port": config.listener_port, "protocol": "tcp",
             "description": "Allow HTTP traffic"},
            {"cidr": "0.0.0.0/0", "port": config.container_port, "protocol": "tcp",
             "description": "Allow HTTP traffic"},
        ],
    )
    unit.add(
        "service-sg",
        "security-group",
        network_id=InputRef(name="network_id"),
        description="Security group for N8N Fargate service",
        allow_all_outbound=True,
        ingress=[
            {"source_security_group_id": ref("alb-sg.id"), "port": config.container_port,
             "protocol": "tcp", "description": "Allow inbound from ALB"},
        ],
    )
    unit.add(
        "alb",
        "load-balancer",
        network_id=InputRef(name="network_id"),
        internet_facing=True,
        security_group_ids=[ref("alb-sg.id")],
        subnet_ids=public_subnets,
    )
    unit.add(
        "target-group",
        "target-group",
        network_id=InputRef(name="network_id"),
        port=config.container_port,
        protocol="HTTP",
        target_type="ip",
        health_check={"path": "/", "interval_seconds": 30, "healthy_http_codes": "200"},
    )
    unit.add(
        "listener",
        "listener",
        load_balancer_id=ref("alb.id"),
        port=config.listener_port,
        protocol="HTTP",
        default_target_group_arn=ref("target-group.arn"),
    )

    service = unit.add(
        "service",
        "compute-service",
        cluster_id=ref("cluster.id"),
        launch_type="FARGATE",
        task_definition_arn=ref("task-definition.arn"),
        desired_count=config.desired_count,
        assign_public_ip=False,
        capacity_provider_strategy=[{"capacity_provider": "FARGATE_SPOT", "weight": 1}],
        security_group_ids=[ref("service-sg.id")],
        subnet_ids=private_subnets,
        target_group_arn=ref("target-group.arn"),
    )
    # Targets can only register once the listener forwards to the group
    service.depends_on.add("listener")

    unit.add(
        "scaling-target",
        "scaling-target",
        service_id=ref("service.id"),
        min_capacity=config.min_capacity,
        max_capacity=config.max_capacity,
    )
    for metric, target in (
        ("cpu", config.cpu_target_percent),
        ("memory", config.memory_target_percent),
    ):
        unit.add(
            f"{metric}-scaling",
            "scaling-policy",
            scaling_target_id=ref("scaling-target.id"),
            metric=metric,
            target_utilization_percent=target,
            scale_in_cooldown_seconds=config.scale_cooldown_seconds,
            scale_out_cooldown_seconds=config.scale_cooldown_seconds,
        )
    return unit


def n8n_topology(config: Optional[N8nTopologyConfig] = None) -> list[DeploymentUnit]:
    """All three units of the reference topology, upstream first."""
    config = config or N8nTopologyConfig()
    return [network_unit(config), filesystem_unit(config), compute_unit(config)]
