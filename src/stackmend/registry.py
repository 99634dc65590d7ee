"""Static registry of resource types that CloudFormation can import."""

IMPORT_IDENTIFIERS: dict[str, tuple[str, ...]] = {
    # Storage and databases
    "AWS::S3::Bucket": ("BucketName",),
    "AWS::DynamoDB::Table": ("TableName",),
    "AWS::DynamoDB::GlobalTable": ("TableName",),
    "AWS::RDS::DBInstance": ("DBInstanceIdentifier",),
    "AWS::RDS::DBCluster": ("DBClusterIdentifier",),
    "AWS::RDS::DBSubnetGroup": ("DBSubnetGroupName",),
    "AWS::RDS::DBParameterGroup": ("DBParameterGroupName",),
    "AWS::ElastiCache::ReplicationGroup": ("ReplicationGroupId",),
    "AWS::EFS::FileSystem": ("FileSystemId",),
    "AWS::ECR::Repository": ("RepositoryName",),
    # Messaging and streaming
    "AWS::SQS::Queue": ("QueueUrl",),
    "AWS::SNS::Topic": ("TopicArn",),
    "AWS::SNS::Subscription": ("SubscriptionArn",),
    "AWS::Kinesis::Stream": ("Name",),
    "AWS::KinesisFirehose::DeliveryStream": ("DeliveryStreamName",),
    "AWS::Events::Rule": ("Name",),
    "AWS::Events::EventBus": ("Name",),
    "AWS::StepFunctions::StateMachine": ("StateMachineArn",),
    "AWS::StepFunctions::Activity": ("Arn",),
    # Compute
    "AWS::Lambda::Function": ("FunctionName",),
    "AWS::Lambda::EventSourceMapping": ("Id",),
    "AWS::ECS::Cluster": ("ClusterName",),
    "AWS::ECS::Service": ("ServiceArn", "Cluster"),
    "AWS::ECS::TaskDefinition": ("TaskDefinitionArn",),
    "AWS::EC2::Instance": ("InstanceId",),
    "AWS::EC2::LaunchTemplate": ("LaunchTemplateId",),
    "AWS::EC2::Volume": ("VolumeId",),
    # Networking
    "AWS::EC2::VPC": ("VpcId",),
    "AWS::EC2::Subnet": ("SubnetId",),
    "AWS::EC2::SecurityGroup": ("GroupId",),
    "AWS::EC2::InternetGateway": ("InternetGatewayId",),
    "AWS::EC2::NatGateway": ("NatGatewayId",),
    "AWS::EC2::RouteTable": ("RouteTableId",),
    "AWS::EC2::NetworkAcl": ("Id",),
    "AWS::EC2::EIP": ("PublicIp",),
    "AWS::EC2::VPCEndpoint": ("Id",),
    "AWS::ElasticLoadBalancingV2::LoadBalancer": ("LoadBalancerArn",),
    "AWS::ElasticLoadBalancingV2::TargetGroup": ("TargetGroupArn",),
    "AWS::ElasticLoadBalancingV2::Listener": ("ListenerArn",),
    "AWS::ElasticLoadBalancingV2::ListenerRule": ("RuleArn",),
    "AWS::Route53::HostedZone": ("Id",),
    "AWS::CloudFront::Distribution": ("Id",),
    "AWS::ApiGateway::RestApi": ("RestApiId",),
    "AWS::ApiGateway::Resource": ("RestApiId", "ResourceId"),
    "AWS::ApiGateway::Stage": ("RestApiId", "StageName"),
    # Identity and security
    "AWS::IAM::Role": ("RoleName",),
    "AWS::IAM::User": ("UserName",),
    "AWS::IAM::Group": ("GroupName",),
    "AWS::IAM::ManagedPolicy": ("PolicyArn",),
    "AWS::IAM::InstanceProfile": ("InstanceProfileName",),
    "AWS::KMS::Key": ("KeyId",),
    "AWS::KMS::Alias": ("AliasName",),
    "AWS::SecretsManager::Secret": ("Id",),
    "AWS::SSM::Parameter": ("Name",),
    "AWS::Cognito::UserPool": ("UserPoolId",),
    # Monitoring
    "AWS::CloudWatch::Alarm": ("AlarmName",),
    "AWS::Logs::LogGroup": ("LogGroupName",),
    "AWS::Logs::MetricFilter": ("LogGroupName", "FilterName"),
    "AWS::Logs::SubscriptionFilter": ("LogGroupName", "FilterName"),
}

DEFAULT_CAPABILITIES: tuple[str, ...] = (
    "CAPABILITY_IAM",
    "CAPABILITY_NAMED_IAM",
    "CAPABILITY_AUTO_EXPAND",
)

REQUIRED_CAPABILITIES: dict[str, tuple[str, ...]] = {
    "AWS::IAM::Role": ("CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"),
    "AWS::IAM::User": ("CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"),
    "AWS::IAM::Group": ("CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"),
    "AWS::IAM::ManagedPolicy": ("CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"),
    "AWS::IAM::InstanceProfile": ("CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"),
    "AWS::Serverless::Function": ("CAPABILITY_AUTO_EXPAND",),
}


def is_importable(resource_type: str) -> bool:
    """Whether CloudFormation supports importing this resource type."""
    return resource_type in IMPORT_IDENTIFIERS


def get_import_properties(resource_type: str) -> list[str]:
    """Identifier keys an import of this type requires; empty if unknown."""
    return list(IMPORT_IDENTIFIERS.get(resource_type, ()))


def get_required_capabilities(resource_types: list[str]) -> list[str]:
    """Union of extra capabilities needed by the given types, in stable order."""
    capabilities: list[str] = []
    for resource_type in resource_types:
        for capability in REQUIRED_CAPABILITIES.get(resource_type, ()):
            if capability not in capabilities:
                capabilities.append(capability)
    return capabilities
