import boto3


DOCKER_USER_DATA = """#!/bin/bash
yum install -y docker
systemctl enable docker
systemctl start docker
usermod -aG docker ec2-user
"""

TAG_ID = "gsfleet:id"
TAG_OWNER = "gsfleet:owner"
TAG_VARIANT = "gsfleet:variant"


def get_default_vpc_and_subnet(region: str) -> tuple[str, str]:
    """Find the default VPC and a subnet in it."""
    ec2 = boto3.client("ec2", region_name=region)
    vpcs = ec2.describe_vpcs(Filters=[{"Name": "is-default", "Values": ["true"]}])
    if not vpcs["Vpcs"]:
        raise RuntimeError(f"No default VPC found in region {region}")
    vpc_id = vpcs["Vpcs"][0]["VpcId"]

    subnets = ec2.describe_subnets(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])
    if not subnets["Subnets"]:
        raise RuntimeError(f"No subnets found in default VPC {vpc_id}")
    return vpc_id, subnets["Subnets"][0]["SubnetId"]


def get_latest_al2023_ami(region: str, architecture: str = "x86_64") -> str:
    ec2 = boto3.client("ec2", region_name=region)
    response = ec2.describe_images(
        Owners=["amazon"],
        Filters=[
            {"Name": "name", "Values": [f"al2023-ami-*-{architecture}"]},
            {"Name": "architecture", "Values": [architecture]},
            {"Name": "state", "Values": ["available"]},
        ],
    )
    images = sorted(response.get("Images", []), key=lambda x: x.get("CreationDate", ""), reverse=True)
    if not images:
        raise RuntimeError(f"No AL2023 AMI found in region {region}")
    return images[0]["ImageId"]


def launch_instance(
    region: str, ami_id: str, instance_type: str, key_name: str,
    security_group_id: str, subnet_id: str | None = None,
    instance_id: str = "", owner_id: str = "", variant: str = "",
    disk_gb: int = 30,
) -> str:
    """Launch a fleet host and return its EC2 instance id."""
    ec2 = boto3.client("ec2", region_name=region)
    kwargs = {
        "ImageId": ami_id, "InstanceType": instance_type,
        "KeyName": key_name, "SecurityGroupIds": [security_group_id],
        "MinCount": 1, "MaxCount": 1, "UserData": DOCKER_USER_DATA,
        "BlockDeviceMappings": [{
            "DeviceName": "/dev/xvda",
            "Ebs": {"VolumeSize": disk_gb, "VolumeType": "gp3"},
        }],
        "TagSpecifications": [{
            "ResourceType": "instance",
            "Tags": [
                {"Key": "Name", "Value": f"gsfleet-{variant}-{instance_id}"},
                {"Key": TAG_ID, "Value": instance_id},
                {"Key": TAG_OWNER, "Value": owner_id},
                {"Key": TAG_VARIANT, "Value": variant},
            ],
        }],
    }
    if subnet_id:
        kwargs["SubnetId"] = subnet_id
    response = ec2.run_instances(**kwargs)
    return response["Instances"][0]["InstanceId"]


def find_fleet_instances(region: str, instance_id: str | None = None) -> list[dict]:
    """Live (not terminated) EC2 instances carrying the fleet id tag, optionally for one fleet id."""
    ec2 = boto3.client("ec2", region_name=region)
    if instance_id:
        filters = [{"Name": f"tag:{TAG_ID}", "Values": [instance_id]}]
    else:
        filters = [{"Name": "tag-key", "Values": [TAG_ID]}]
    paginator = ec2.get_paginator("describe_instances")
    results = []
    for page in paginator.paginate(Filters=filters):
        for reservation in page["Reservations"]:
            for instance in reservation["Instances"]:
                state = instance["State"]["Name"]
                if state in ("terminated", "shutting-down"):
                    continue
                tags = {t["Key"]: t["Value"] for t in instance.get("Tags", [])}
                results.append({
                    "ec2_instance_id": instance["InstanceId"],
                    "state": state,
                    "public_ip": instance.get("PublicIpAddress"),
                    "fleet_id": tags.get(TAG_ID, ""),
                    "owner_id": tags.get(TAG_OWNER, ""),
                    "variant": tags.get(TAG_VARIANT, ""),
                })
    return results


def terminate_instance(region: str, ec2_instance_id: str) -> None:
    ec2 = boto3.client("ec2", region_name=region)
    ec2.terminate_instances(InstanceIds=[ec2_instance_id])


def get_instance_public_ip(region: str, ec2_instance_id: str) -> str | None:
    ec2 = boto3.client("ec2", region_name=region)
    response = ec2.describe_instances(InstanceIds=[ec2_instance_id])
    instances = response["Reservations"][0]["Instances"]
    if instances:
        return instances[0].get("PublicIpAddress")
    return None


def wait_for_instance_running(region: str, ec2_instance_id: str) -> None:
    ec2 = boto3.client("ec2", region_name=region)
    waiter = ec2.get_waiter("instance_running")
    waiter.wait(InstanceIds=[ec2_instance_id])
