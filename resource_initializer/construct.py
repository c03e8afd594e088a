from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from aws_cdk import Duration, Token
from aws_cdk import aws_ec2 as ec2
from aws_cdk import aws_ecr_assets as ecr_assets
from aws_cdk import aws_iam as iam
from aws_cdk import aws_lambda as lambda_
from aws_cdk import aws_logs as logs
from aws_cdk.custom_resources import AwsCustomResource, AwsCustomResourcePolicy, AwsSdkCall, PhysicalResourceId
from constructs import Construct, IConstruct

from resource_initializer.identity import build_payload, function_hash, identity_token, physical_resource_id

DEFAULT_MEMORY_SIZE = 128
CUSTOM_RESOURCE_TIMEOUT = Duration.minutes(10)


@dataclass
class ResourceInitializerProps:
    vpc: ec2.IVpc
    subnets_selection: ec2.SubnetSelection
    fn_timeout: Duration
    # Docker build context of the handler image.
    fn_code_dir: str
    fn_log_retention: logs.RetentionDays
    config: Mapping[str, Any]
    fn_security_groups: Sequence[ec2.ISecurityGroup] = field(default_factory=list)
    fn_memory_size: Optional[int] = None


def _stable_ref(value: str, construct: IConstruct) -> str:
    # Ids of resources defined in this app are unresolved until deploy time.
    return construct.node.path if Token.is_unresolved(value) else value


def _describe_subnets(selection: ec2.SubnetSelection) -> dict[str, Any]:
    return {
        "subnet_type": selection.subnet_type.name if selection.subnet_type else None,
        "subnet_group_name": selection.subnet_group_name,
        "one_per_az": selection.one_per_az,
        "availability_zones": list(selection.availability_zones or []),
        "subnets": [_stable_ref(s.subnet_id, s) for s in selection.subnets or []],
    }


class ResourceInitializer(Construct):
    """Runs a container-packaged initializer function during deployment.

    The function is invoked through an ``AwsCustomResource`` whose physical id
    is derived from the function (image asset hash and deployed settings) and
    the invocation payload, so CloudFormation re-invokes it only when one of
    them changes.

    Ordering is the caller's job: add a dependency from ``custom_resource`` to
    the resource being initialized and open the network path to it.
    """

    def __init__(self, scope: Construct, id: str, props: ResourceInitializerProps) -> None:
        super().__init__(scope, id)

        memory_size = props.fn_memory_size or DEFAULT_MEMORY_SIZE
        if memory_size < DEFAULT_MEMORY_SIZE:
            raise ValueError(f"fn_memory_size must be at least {DEFAULT_MEMORY_SIZE} MB, got {memory_size}")
        if not Path(props.fn_code_dir).is_dir():
            raise FileNotFoundError(f"Handler image directory not found: {props.fn_code_dir}")
        try:
            payload = build_payload(props.config)
        except TypeError as e:
            raise ValueError(f"config must be JSON serializable: {e}") from e

        fn_name = f"{id}ResourceInitializerFn"

        image = ecr_assets.DockerImageAsset(
            self,
            "ResourceInitializerFnImage",
            directory=str(props.fn_code_dir),
        )

        fn_sg = ec2.SecurityGroup(
            self,
            "ResourceInitializerFnSg",
            security_group_name=f"{id}ResourceInitializerFnSg",
            vpc=props.vpc,
            allow_all_outbound=True,
        )

        fn = lambda_.DockerImageFunction(
            self,
            "ResourceInitializerFn",
            memory_size=memory_size,
            function_name=fn_name,
            code=lambda_.DockerImageCode.from_ecr(image.repository, tag_or_digest=image.image_tag),
            vpc=props.vpc,
            vpc_subnets=props.subnets_selection,
            security_groups=[fn_sg, *props.fn_security_groups],
            timeout=props.fn_timeout,
            log_retention=props.fn_log_retention,
        )

        fn_hash = function_hash(
            image.asset_hash,
            function_name=fn_name,
            memory_size=memory_size,
            timeout=int(props.fn_timeout.to_seconds()),
            log_retention=props.fn_log_retention.name,
            vpc=_stable_ref(props.vpc.vpc_id, props.vpc),
            subnets=_describe_subnets(props.subnets_selection),
            security_groups=[_stable_ref(sg.security_group_id, sg) for sg in props.fn_security_groups],
        )
        token = identity_token(fn_hash, payload)

        sdk_call = AwsSdkCall(
            service="Lambda",
            action="invoke",
            parameters={
                "FunctionName": fn.function_name,
                "Payload": payload,
            },
            physical_resource_id=PhysicalResourceId.of(physical_resource_id(id, token)),
        )

        role = iam.Role(
            self,
            "AwsCustomResourceRole",
            assumed_by=iam.ServicePrincipal("lambda.amazonaws.com"),
        )
        # The AwsCustomResource provider is a stack-wide singleton shared by
        # every initializer, so it must be able to invoke any function.
        role.add_to_policy(
            iam.PolicyStatement(
                resources=["*"],
                actions=["lambda:InvokeFunction"],
            )
        )

        self.custom_resource = AwsCustomResource(
            self,
            "AwsCustomResource",
            policy=AwsCustomResourcePolicy.from_sdk_calls(resources=AwsCustomResourcePolicy.ANY_RESOURCE),
            on_update=sdk_call,
            timeout=CUSTOM_RESOURCE_TIMEOUT,
            role=role,
            install_latest_aws_sdk=False,
        )

        self.response: str = self.custom_resource.get_response_field("Payload")
        self.function = fn
        self.image = image
        self.payload = payload
        self.function_hash = fn_hash
        self.identity_token = token
