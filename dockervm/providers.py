"""AWS provisioning for a single Docker host.

Creates the fixed resource set (VPC, subnet, internet gateway, route table,
security group, key pair, instance) in dependency order. Every resource is
looked up by its Name tag first, so re-running apply reuses what exists.
"""

import base64
import configparser
import hashlib
import os
from datetime import datetime, timezone

import boto3
from botocore.exceptions import ClientError, NoCredentialsError, ProfileNotFound
from dotenv import load_dotenv

from .config import DeploymentConfig, DeploymentScope
from .types import DeploymentOutputs
from .utils import error, log, warn

CANONICAL_OWNER_ID = "099720109477"
UBUNTU_AMI_PATTERN = "ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server-*"
MANAGED_BY = "dockervm"
ANYWHERE = "0.0.0.0/0"
SSH_PORT = 22
WEB_PORT = 8080


def get_aws_config(profile: str | None = None) -> dict:
    """Load AWS configuration for boto3 session initialization.

    Picks the profile from the argument or AWS_PROFILE when it exists in
    ~/.aws/credentials or ~/.aws/config. Does not validate credentials; call
    check_aws_auth() for that.

    :param profile: Explicit AWS profile name (overrides AWS_PROFILE env var)
    :return: Dict with an optional profile_name key for boto3.Session()
    """
    load_dotenv()

    available_profiles = set()
    for path in ["~/.aws/credentials", "~/.aws/config"]:
        path = os.path.expanduser(path)
        if os.path.exists(path):
            cfg = configparser.ConfigParser()
            cfg.read(path)
            for section in cfg.sections():
                available_profiles.add(section.removeprefix("profile "))

    aws_config = {}
    profile_name = profile or os.getenv("AWS_PROFILE")
    if profile_name:
        if profile_name in available_profiles:
            aws_config["profile_name"] = profile_name
        else:
            log(f"AWS profile '{profile_name}' not found, using default credential chain...")
            os.environ.pop("AWS_PROFILE", None)
    return aws_config


def check_aws_auth(profile: str | None = None) -> None:
    """Validate AWS credentials, fail fast with clear error if expired or invalid.

    :param profile: AWS profile name to check (uses default chain if None)
    :raises SystemExit: If credentials are missing, expired, or invalid
    """
    aws_config = {"profile_name": profile} if profile else {}
    try:
        session = boto3.Session(**aws_config)
        session.client("sts").get_caller_identity()
    except ProfileNotFound:
        error(f"AWS profile '{profile}' not found. Run: aws configure --profile {profile}")
    except NoCredentialsError:
        error(
            "AWS credentials not configured. Please run:\n"
            "  aws configure\n"
            "Or set environment variables:\n"
            "  export AWS_PROFILE=your-profile"
        )
    except ClientError as e:
        code = e.response["Error"]["Code"]
        if code in ("ExpiredToken", "ExpiredTokenException", "InvalidClientTokenId"):
            error(f"AWS credentials expired or invalid ({code}). Refresh them and retry.")
        raise


def _tags(resource_type: str, name: str, prefix: str) -> list[dict]:
    return [
        {
            "ResourceType": resource_type,
            "Tags": [
                {"Key": "Name", "Value": name},
                {"Key": "ManagedBy", "Value": MANAGED_BY},
                {"Key": "Environment", "Value": prefix},
                {"Key": "CreatedAt", "Value": datetime.now(timezone.utc).isoformat()},
            ],
        }
    ]


def _name_filter(name: str) -> dict:
    return {"Name": "tag:Name", "Values": [name]}


def _fingerprint_matches(fingerprint: str, config: DeploymentConfig) -> bool:
    """Compare an EC2 key pair fingerprint with the configured public key.

    EC2 reports imported RSA keys as MD5 colon-hex and ED25519 keys as
    base64 SHA-256.
    """
    if fingerprint == config.key_fingerprint:
        return True
    blob = base64.b64decode(config.public_key.split()[1])
    sha256 = base64.b64encode(hashlib.sha256(blob).digest()).decode()
    return fingerprint.removeprefix("SHA256:").rstrip("=") == sha256.rstrip("=")


class AWSProvisioner:
    """Find-or-create the deployment's resources.

    ``outputs`` and ``destroy`` only need a :class:`DeploymentScope`;
    ``apply`` needs a full :class:`DeploymentConfig`.
    """

    def __init__(self, config: DeploymentScope, aws_profile: str | None = None):
        self.config = config
        self.names = config.resource_names
        self.aws_config = get_aws_config(profile=aws_profile)
        self._ec2 = None

    def validate_auth(self) -> None:
        check_aws_auth(self.aws_config.get("profile_name"))

    def _get_session(self):
        """Get boto3 session using aws_config."""
        return boto3.Session(region_name=self.config.region, **self.aws_config)

    @property
    def ec2(self):
        if self._ec2 is None:
            self._ec2 = self._get_session().client("ec2")
        return self._ec2

    def _find_ami(self) -> str:
        response = self.ec2.describe_images(
            Filters=[
                {"Name": "name", "Values": [UBUNTU_AMI_PATTERN]},
                {"Name": "state", "Values": ["available"]},
                {"Name": "architecture", "Values": ["x86_64"]},
            ],
            Owners=[CANONICAL_OWNER_ID],
        )
        if not response["Images"]:
            error(f"No AMI found matching pattern: '{UBUNTU_AMI_PATTERN}'")
        images = sorted(response["Images"], key=lambda x: x["CreationDate"], reverse=True)
        return images[0]["ImageId"]

    def _find_vpc(self) -> str | None:
        vpcs = self.ec2.describe_vpcs(Filters=[_name_filter(self.names["vpc"])])["Vpcs"]
        return vpcs[0]["VpcId"] if vpcs else None

    def _ensure_vpc(self) -> str:
        vpc_id = self._find_vpc()
        if vpc_id:
            log(f"Using existing VPC: '{vpc_id}'")
            return vpc_id

        log(f"Creating VPC '{self.names['vpc']}' ({self.config.network_cidr})...")
        vpc = self.ec2.create_vpc(
            CidrBlock=str(self.config.network_cidr),
            TagSpecifications=_tags("vpc", self.names["vpc"], self.config.environment_prefix),
        )["Vpc"]
        vpc_id = vpc["VpcId"]
        self.ec2.get_waiter("vpc_available").wait(VpcIds=[vpc_id])
        self.ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsSupport={"Value": True})
        self.ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsHostnames={"Value": True})
        log(f"Created VPC: '{vpc_id}'")
        return vpc_id

    def _ensure_subnet(self, vpc_id: str) -> str:
        subnets = self.ec2.describe_subnets(
            Filters=[_name_filter(self.names["subnet"]), {"Name": "vpc-id", "Values": [vpc_id]}]
        )["Subnets"]
        if subnets:
            subnet_id = subnets[0]["SubnetId"]
            log(f"Using existing subnet: '{subnet_id}'")
            return subnet_id

        log(
            f"Creating subnet '{self.names['subnet']}' "
            f"({self.config.subnet_cidr} in {self.config.availability_zone})..."
        )
        subnet = self.ec2.create_subnet(
            VpcId=vpc_id,
            CidrBlock=str(self.config.subnet_cidr),
            AvailabilityZone=self.config.availability_zone,
            TagSpecifications=_tags(
                "subnet", self.names["subnet"], self.config.environment_prefix
            ),
        )["Subnet"]
        subnet_id = subnet["SubnetId"]
        self.ec2.modify_subnet_attribute(
            SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True}
        )
        log(f"Created subnet: '{subnet_id}'")
        return subnet_id

    def _ensure_internet_gateway(self, vpc_id: str) -> str:
        igws = self.ec2.describe_internet_gateways(
            Filters=[_name_filter(self.names["internet_gateway"])]
        )["InternetGateways"]
        if igws:
            igw = igws[0]
            igw_id = igw["InternetGatewayId"]
            attached = any(a.get("VpcId") == vpc_id for a in igw.get("Attachments", []))
            if not attached:
                self.ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
                log(f"Attached internet gateway '{igw_id}' to '{vpc_id}'")
            else:
                log(f"Using existing internet gateway: '{igw_id}'")
            return igw_id

        igw_id = self.ec2.create_internet_gateway(
            TagSpecifications=_tags(
                "internet-gateway",
                self.names["internet_gateway"],
                self.config.environment_prefix,
            )
        )["InternetGateway"]["InternetGatewayId"]
        self.ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
        log(f"Created and attached internet gateway: '{igw_id}'")
        return igw_id

    def _ensure_route_table(self, vpc_id: str, subnet_id: str, igw_id: str) -> str:
        rts = self.ec2.describe_route_tables(
            Filters=[_name_filter(self.names["route_table"]), {"Name": "vpc-id", "Values": [vpc_id]}]
        )["RouteTables"]
        if rts:
            rt = rts[0]
            rt_id = rt["RouteTableId"]
            log(f"Using existing route table: '{rt_id}'")
        else:
            rt = self.ec2.create_route_table(
                VpcId=vpc_id,
                TagSpecifications=_tags(
                    "route-table", self.names["route_table"], self.config.environment_prefix
                ),
            )["RouteTable"]
            rt_id = rt["RouteTableId"]
            log(f"Created route table: '{rt_id}'")

        has_igw_route = any(
            r.get("GatewayId") == igw_id and r.get("DestinationCidrBlock") == ANYWHERE
            for r in rt.get("Routes", [])
        )
        if not has_igw_route:
            self.ec2.create_route(
                RouteTableId=rt_id, DestinationCidrBlock=ANYWHERE, GatewayId=igw_id
            )
            log(f"Added route: {ANYWHERE} -> '{igw_id}'")

        associated = any(
            a.get("SubnetId") == subnet_id for a in rt.get("Associations", [])
        )
        if not associated:
            self.ec2.associate_route_table(RouteTableId=rt_id, SubnetId=subnet_id)
            log(f"Associated route table with subnet '{subnet_id}'")
        return rt_id

    def _ensure_security_group(self, vpc_id: str) -> str:
        """Ensure the security group exists with the deployment's ingress rules.

        SSH (22) is allowed only from admin_source_ip, the web port (8080)
        from anywhere. Egress keeps the AWS default of all traffic.
        """
        sg_name = self.names["security_group"]
        admin_cidr = str(self.config.admin_source_ip)
        groups = self.ec2.describe_security_groups(
            Filters=[
                {"Name": "group-name", "Values": [sg_name]},
                {"Name": "vpc-id", "Values": [vpc_id]},
            ]
        )["SecurityGroups"]

        if groups:
            sg = groups[0]
            sg_id = sg["GroupId"]
            log(f"Using existing security group: '{sg_name}'")
            self._update_ssh_cidr(sg_id, sg.get("IpPermissions", []), admin_cidr)
            return sg_id

        log(f"Creating security group '{sg_name}'...")
        sg_id = self.ec2.create_security_group(
            GroupName=sg_name,
            Description=f"dockervm web host ({self.config.environment_prefix})",
            VpcId=vpc_id,
            TagSpecifications=_tags("security-group", sg_name, self.config.environment_prefix),
        )["GroupId"]
        self.ec2.authorize_security_group_ingress(
            GroupId=sg_id,
            IpPermissions=[
                {
                    "IpProtocol": "tcp",
                    "FromPort": SSH_PORT,
                    "ToPort": SSH_PORT,
                    "IpRanges": [{"CidrIp": admin_cidr, "Description": "SSH access"}],
                },
                {
                    "IpProtocol": "tcp",
                    "FromPort": WEB_PORT,
                    "ToPort": WEB_PORT,
                    "IpRanges": [{"CidrIp": ANYWHERE, "Description": "HTTP access"}],
                },
            ],
        )
        log(f"Created security group: '{sg_id}' (SSH from '{admin_cidr}')")
        return sg_id

    def _update_ssh_cidr(self, sg_id: str, permissions: list[dict], admin_cidr: str) -> None:
        ssh_rules = [
            r
            for r in permissions
            if r.get("IpProtocol") == "tcp"
            and r.get("FromPort") == SSH_PORT
            and r.get("ToPort") == SSH_PORT
        ]
        existing_cidrs = [
            ip_range["CidrIp"] for rule in ssh_rules for ip_range in rule.get("IpRanges", [])
        ]
        if existing_cidrs == [admin_cidr]:
            return

        if ssh_rules:
            self.ec2.revoke_security_group_ingress(GroupId=sg_id, IpPermissions=ssh_rules)
        self.ec2.authorize_security_group_ingress(
            GroupId=sg_id,
            IpPermissions=[
                {
                    "IpProtocol": "tcp",
                    "FromPort": SSH_PORT,
                    "ToPort": SSH_PORT,
                    "IpRanges": [{"CidrIp": admin_cidr, "Description": "SSH access"}],
                }
            ],
        )
        log(f"Updated SSH access to '{admin_cidr}'")

    def _ensure_key_pair(self) -> str:
        key_name = self.names["key_pair"]
        try:
            key_pairs = self.ec2.describe_key_pairs(KeyNames=[key_name])["KeyPairs"]
        except ClientError as e:
            if e.response["Error"]["Code"] != "InvalidKeyPair.NotFound":
                raise
            key_pairs = []

        if key_pairs:
            existing = key_pairs[0].get("KeyFingerprint", "")
            if _fingerprint_matches(existing, self.config):
                log(f"Using existing SSH key: '{key_name}'")
                return key_name
            warn(
                f"SSH key '{key_name}' has fingerprint '{existing}', "
                f"expected '{self.config.key_fingerprint}'. Replacing it; "
                f"an existing instance keeps the old key."
            )
            self.ec2.delete_key_pair(KeyName=key_name)

        log(f"Importing SSH key '{key_name}' ({self.config.key_fingerprint})...")
        self.ec2.import_key_pair(
            KeyName=key_name,
            PublicKeyMaterial=self.config.public_key.encode(),
            TagSpecifications=_tags("key-pair", key_name, self.config.environment_prefix),
        )
        return key_name

    def _find_instance(self, states: list[str]) -> dict | None:
        response = self.ec2.describe_instances(
            Filters=[
                _name_filter(self.names["instance"]),
                {"Name": "instance-state-name", "Values": states},
            ]
        )
        for reservation in response["Reservations"]:
            for instance in reservation["Instances"]:
                return instance
        return None

    def _ensure_instance(self, subnet_id: str, sg_id: str, key_name: str, user_data: str) -> dict:
        existing = self._find_instance(["pending", "running", "stopping", "stopped"])
        if existing:
            instance_id = existing["InstanceId"]
            state = existing.get("State", {}).get("Name", "running")
            log(f"Using existing instance: '{instance_id}' ({state})")
            if state == "stopping":
                self.ec2.get_waiter("instance_stopped").wait(InstanceIds=[instance_id])
            if state in ("stopping", "stopped"):
                log(f"Starting instance '{instance_id}'...")
                self.ec2.start_instances(InstanceIds=[instance_id])
        else:
            ami_id = self._find_ami()
            log(f"Using AMI: '{ami_id}'")
            log(f"Creating EC2 instance '{self.names['instance']}' ({self.config.instance_size})...")
            response = self.ec2.run_instances(
                ImageId=ami_id,
                InstanceType=self.config.instance_size,
                KeyName=key_name,
                MinCount=1,
                MaxCount=1,
                UserData=base64.b64encode(user_data.encode()).decode(),
                NetworkInterfaces=[
                    {
                        "DeviceIndex": 0,
                        "SubnetId": subnet_id,
                        "Groups": [sg_id],
                        "AssociatePublicIpAddress": True,
                    }
                ],
                TagSpecifications=_tags(
                    "instance", self.names["instance"], self.config.environment_prefix
                ),
            )
            instance_id = response["Instances"][0]["InstanceId"]

        log("Waiting for instance to start...")
        self.ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])
        response = self.ec2.describe_instances(InstanceIds=[instance_id])
        return response["Reservations"][0]["Instances"][0]

    def apply(self, user_data: str) -> DeploymentOutputs:
        """Create or reuse every resource in dependency order.

        :param user_data: First-boot script, only used when the instance is new
        :return: Instance id, public IP and AMI id
        """
        vpc_id = self._ensure_vpc()
        subnet_id = self._ensure_subnet(vpc_id)
        igw_id = self._ensure_internet_gateway(vpc_id)
        self._ensure_route_table(vpc_id, subnet_id, igw_id)
        sg_id = self._ensure_security_group(vpc_id)
        key_name = self._ensure_key_pair()
        instance = self._ensure_instance(subnet_id, sg_id, key_name, user_data)

        ip = instance.get("PublicIpAddress")
        if not ip:
            error("No public IP address assigned to instance")
        return {"instance_id": instance["InstanceId"], "public_ip": ip, "ami_id": instance["ImageId"]}

    def outputs(self) -> DeploymentOutputs | None:
        """Look up the running instance and report its outputs."""
        instance = self._find_instance(["pending", "running"])
        if not instance:
            return None
        return {
            "instance_id": instance["InstanceId"],
            "public_ip": instance.get("PublicIpAddress", "N/A"),
            "ami_id": instance["ImageId"],
        }

    def destroy(self) -> None:
        """Delete every resource in reverse dependency order, skipping missing ones."""
        instance = self._find_instance(["pending", "running", "stopping", "stopped"])
        if instance:
            instance_id = instance["InstanceId"]
            log(f"Terminating instance '{instance_id}'...")
            self.ec2.terminate_instances(InstanceIds=[instance_id])
            self.ec2.get_waiter("instance_terminated").wait(InstanceIds=[instance_id])

        try:
            self.ec2.describe_key_pairs(KeyNames=[self.names["key_pair"]])
            self.ec2.delete_key_pair(KeyName=self.names["key_pair"])
            log(f"Deleted key pair '{self.names['key_pair']}'")
        except ClientError as e:
            if e.response["Error"]["Code"] != "InvalidKeyPair.NotFound":
                raise

        vpc_id = self._find_vpc()
        if not vpc_id:
            log(f"No VPC named '{self.names['vpc']}' found")
            return

        groups = self.ec2.describe_security_groups(
            Filters=[
                {"Name": "group-name", "Values": [self.names["security_group"]]},
                {"Name": "vpc-id", "Values": [vpc_id]},
            ]
        )["SecurityGroups"]
        for sg in groups:
            self.ec2.delete_security_group(GroupId=sg["GroupId"])
            log(f"Deleted security group '{sg['GroupId']}'")

        rts = self.ec2.describe_route_tables(
            Filters=[_name_filter(self.names["route_table"]), {"Name": "vpc-id", "Values": [vpc_id]}]
        )["RouteTables"]
        for rt in rts:
            for assoc in rt.get("Associations", []):
                if not assoc.get("Main"):
                    self.ec2.disassociate_route_table(
                        AssociationId=assoc["RouteTableAssociationId"]
                    )
            self.ec2.delete_route_table(RouteTableId=rt["RouteTableId"])
            log(f"Deleted route table '{rt['RouteTableId']}'")

        igws = self.ec2.describe_internet_gateways(
            Filters=[_name_filter(self.names["internet_gateway"])]
        )["InternetGateways"]
        for igw in igws:
            for attachment in igw.get("Attachments", []):
                self.ec2.detach_internet_gateway(
                    InternetGatewayId=igw["InternetGatewayId"], VpcId=attachment["VpcId"]
                )
            self.ec2.delete_internet_gateway(InternetGatewayId=igw["InternetGatewayId"])
            log(f"Deleted internet gateway '{igw['InternetGatewayId']}'")

        subnets = self.ec2.describe_subnets(
            Filters=[_name_filter(self.names["subnet"]), {"Name": "vpc-id", "Values": [vpc_id]}]
        )["Subnets"]
        for subnet in subnets:
            self.ec2.delete_subnet(SubnetId=subnet["SubnetId"])
            log(f"Deleted subnet '{subnet['SubnetId']}'")

        self.ec2.delete_vpc(VpcId=vpc_id)
        log(f"Deleted VPC '{vpc_id}'")
