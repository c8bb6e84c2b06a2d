import boto3

from gsfleet.games.registry import GamePort


def _ssh_permission(ssh_cidr: str) -> dict:
    return {
        "IpProtocol": "tcp", "FromPort": 22, "ToPort": 22,
        "IpRanges": [{"CidrIp": ssh_cidr, "Description": "SSH access"}],
    }


def get_or_create_security_group(
    region: str, variant: str, ports: list[GamePort], ssh_cidr: str = "0.0.0.0/0",
    vpc_id: str | None = None,
) -> str:
    """Return the id of the variant's security group, creating it with game and SSH ingress if missing."""
    ec2 = boto3.client("ec2", region_name=region)
    sg_name = f"gsfleet-{variant}-sg"

    filters = [{"Name": "group-name", "Values": [sg_name]}]
    if vpc_id:
        filters.append({"Name": "vpc-id", "Values": [vpc_id]})
    existing = ec2.describe_security_groups(Filters=filters)
    if existing["SecurityGroups"]:
        sg_id = existing["SecurityGroups"][0]["GroupId"]
        _ensure_ssh_rule(ec2, sg_id, ssh_cidr)
        return sg_id

    kwargs = {
        "GroupName": sg_name,
        "Description": f"gsfleet security group for {variant}",
        "TagSpecifications": [{
            "ResourceType": "security-group",
            "Tags": [
                {"Key": "gsfleet:variant", "Value": variant},
                {"Key": "Name", "Value": sg_name},
            ],
        }],
    }
    if vpc_id:
        kwargs["VpcId"] = vpc_id
    sg_id = ec2.create_security_group(**kwargs)["GroupId"]

    # A port may be listed once per protocol; EC2 rejects duplicate rules.
    ip_permissions = [_ssh_permission(ssh_cidr)]
    seen = set()
    for port in ports:
        if (port.port, port.protocol) in seen:
            continue
        seen.add((port.port, port.protocol))
        ip_permissions.append(port.sg_rule())

    ec2.authorize_security_group_ingress(GroupId=sg_id, IpPermissions=ip_permissions)
    return sg_id


def _ensure_ssh_rule(ec2, sg_id: str, ssh_cidr: str) -> None:
    """Add the SSH ingress rule if the CIDR is not already present."""
    sg = ec2.describe_security_groups(GroupIds=[sg_id])["SecurityGroups"][0]
    for perm in sg.get("IpPermissions", []):
        if perm.get("FromPort") == 22 and perm.get("ToPort") == 22:
            if any(r.get("CidrIp") == ssh_cidr for r in perm.get("IpRanges", [])):
                return
    ec2.authorize_security_group_ingress(GroupId=sg_id, IpPermissions=[_ssh_permission(ssh_cidr)])
